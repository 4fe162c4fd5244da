"""
Test package for HKChat.
"""
