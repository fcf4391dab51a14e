"""
Core types shared by every chipsettle component: money, models, config,
errors, results, canonical hashing, signing keys and timestamps.
"""
