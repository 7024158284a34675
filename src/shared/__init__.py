"""
Shared Layer - Cross-Cutting Concerns
Configuration, errors, logging, database session binding and HTTP plumbing
"""
