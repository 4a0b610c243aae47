"""
Collaborator interfaces and in-memory implementations for the
business-context pipeline.
"""

from .services import (
    BusinessContextError,
    ExternalServiceError,
    ContractViolationError,
    LanguageModelService,
    EmbeddingService,
    SemanticMatchingService,
    SimilarityThresholdProvider,
    BusinessMetadataService,
    UserFeedbackRepository,
    UserPatternProvider,
)
from .in_memory import (
    InMemoryBusinessMetadataService,
    InMemoryFeedbackRepository,
    InMemoryUserPatternProvider,
)

__all__ = [
    'BusinessContextError',
    'ExternalServiceError',
    'ContractViolationError',
    'LanguageModelService',
    'EmbeddingService',
    'SemanticMatchingService',
    'SimilarityThresholdProvider',
    'BusinessMetadataService',
    'UserFeedbackRepository',
    'UserPatternProvider',
    'InMemoryBusinessMetadataService',
    'InMemoryFeedbackRepository',
    'InMemoryUserPatternProvider',
]

__version__ = '1.0.0'
