"""
Reportflow Engine - Core Infrastructure

Configuration, logging, error handling, middleware and transactional storage.
"""
