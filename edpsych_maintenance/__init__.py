"""
EdPsych database maintenance: health, schema and integrity checks, integrity
repair, operation logging and usage statistics.
"""

__version__ = "1.0.0"
