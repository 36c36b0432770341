"""Unit tests: one component at a time, no storage or network"""
