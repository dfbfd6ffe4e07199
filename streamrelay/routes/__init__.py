"""
StreamRelay - Routes package.
"""
