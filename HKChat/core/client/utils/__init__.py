"""
Utility functions and shared components for the client runtime.
"""

from .exceptions import (
    ClientError,
    AuthenticationError,
    WsConnectionError,
    CallError,
    MediaAcquisitionError,
    NegotiationError,
    InvalidTransitionError,
)

__all__ = [
    'ClientError',
    'AuthenticationError',
    'WsConnectionError',
    'CallError',
    'MediaAcquisitionError',
    'NegotiationError',
    'InvalidTransitionError',
]
