"""Core domain logic for caregiving rule monitoring.

This package contains the business logic and domain models,
isolated from external dependencies for easy testing and reasoning.
"""
