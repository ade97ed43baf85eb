"""
KeyStock - inventory reservation and checkout consistency engine.
"""
__version__ = "1.0.0"
