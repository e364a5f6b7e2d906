"""File upload ingestion: extraction, Artisan Cut compression, embedding."""

from .compressor import FileCompressor
from .extraction import ExtractionResult, classify_file_type, extract_text, validate_upload
from .pipeline import FileIngestionPipeline

__all__ = [
    "FileCompressor",
    "ExtractionResult",
    "classify_file_type",
    "extract_text",
    "validate_upload",
    "FileIngestionPipeline",
]
