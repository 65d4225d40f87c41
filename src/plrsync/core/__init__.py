"""Core sync modules.

CRITICAL: This package must have NO web framework or CLI dependencies,
except for the Flask blueprint factory in sync.py.
"""
