"""
rxrelay: supervises an rx receiver process and fans its audio and log output
out to HTTP streaming clients.
"""

__version__ = "0.3.0"
