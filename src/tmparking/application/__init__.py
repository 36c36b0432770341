"""Application layer: the parking service and its command objects"""
