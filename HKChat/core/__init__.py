"""Core modules for HKChat."""
