"""
Utilities - Logging, HTTP clients and coordination helpers
"""
