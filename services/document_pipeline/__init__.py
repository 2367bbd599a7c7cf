"""Document pipeline: upload, indexing, field extraction and classification."""

from .extractor import FieldDefinition, ExtractionResult, FieldExtractor
from .classifier import ClassificationResult, DocumentClassifier, parse_classification

__all__ = [
    "FieldDefinition",
    "ExtractionResult",
    "FieldExtractor",
    "ClassificationResult",
    "DocumentClassifier",
    "parse_classification",
]
