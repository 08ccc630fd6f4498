"""
Core Module
============

Shared core utilities and abstractions used across the application.

This module contains framework-agnostic code that defines the fundamental
building blocks of the system.
"""

from kb_learning.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    ResourceNotFoundException,
    ConfigurationException,
    ExternalServiceException,
    LLMException,
    TransientProviderError,
    MalformedOutputError,
    VectorStoreException,
    DuplicateClusterError,
    InvalidQueueTransitionError,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "ResourceNotFoundException",
    "ConfigurationException",
    "ExternalServiceException",
    "LLMException",
    "TransientProviderError",
    "MalformedOutputError",
    "VectorStoreException",
    "DuplicateClusterError",
    "InvalidQueueTransitionError",
]
