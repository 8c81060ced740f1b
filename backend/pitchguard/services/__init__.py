"""
Gate services: counters, reputation, lockouts, geography, scoring, events
"""
