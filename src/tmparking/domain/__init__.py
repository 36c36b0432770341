"""Domain layer: immutable records, aggregates and time-window policies"""
