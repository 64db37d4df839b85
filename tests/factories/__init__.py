"""
Test data factories.
"""
