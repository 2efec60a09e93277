"""
mailsort - auto-sort rule engine for email
"""
__version__ = '0.2.0'
