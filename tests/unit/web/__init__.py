"""Route tests for the field service API.

Each router module has a corresponding test file.
"""
