"""
Text extraction for uploaded files.

Classifies the file by extension, hashes the raw bytes (SHA-256, used for
per-user duplicate detection) and pulls plain text out where it can.
Images, xlsx/xls and unknown types are processed on filename only and
carry a warning instead of failing.
"""

import hashlib
import io
import logging
from dataclasses import dataclass, field

from pypdf import PdfReader

from ..errors import IngestionError, ValidationError
from ..models import FileType, ProcessingStage

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_MB = 10

TEXT_EXTENSIONS = {"txt", "md", "markdown", "rtf"}
CODE_EXTENSIONS = {
    "js", "jsx", "ts", "tsx", "py", "java", "cpp", "c", "h", "cs",
    "rb", "go", "rs", "php", "swift", "kt", "scala", "sh", "bash",
    "sql", "html", "css", "scss", "sass", "json", "xml", "yaml", "yml",
    "toml", "ini", "conf", "config", "env",
}
IMAGE_EXTENSIONS = {"png", "jpg", "jpeg", "gif", "webp", "bmp", "svg", "ico"}
SPREADSHEET_EXTENSIONS = {"xlsx", "xls", "csv", "tsv"}


@dataclass
class ExtractionResult:
    text: str
    file_type: FileType
    content_hash: str
    file_size_bytes: int
    filename: str
    extension: str
    warnings: list[str] = field(default_factory=list)

    @property
    def word_count(self) -> int:
        return len(self.text.split())

    @property
    def char_count(self) -> int:
        return len(self.text)


def extract_extension(filename: str) -> str:
    parts = filename.rsplit(".", 1)
    return parts[1].lower() if len(parts) == 2 else ""


def classify_file_type(extension: str) -> FileType:
    if extension == "pdf":
        return FileType.PDF
    if extension in IMAGE_EXTENSIONS:
        return FileType.IMAGE
    if extension in TEXT_EXTENSIONS:
        return FileType.TEXT
    if extension in CODE_EXTENSIONS:
        return FileType.CODE
    if extension in SPREADSHEET_EXTENSIONS:
        return FileType.SPREADSHEET
    return FileType.OTHER


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def validate_upload(data: bytes, filename: str, max_size_mb: int = MAX_FILE_SIZE_MB) -> None:
    """Size and name checks; raises ValidationError before anything is written."""
    if not isinstance(data, (bytes, bytearray)):
        raise ValidationError(
            "Invalid file buffer", details={"received": type(data).__name__}
        )
    if not isinstance(filename, str) or not filename.strip():
        raise ValidationError("Filename is required and must be a non-empty string")
    if len(data) == 0:
        raise ValidationError("File is empty (0 bytes)", code="EMPTY_FILE")
    max_bytes = max_size_mb * 1024 * 1024
    if len(data) > max_bytes:
        raise ValidationError(
            f"File size ({len(data) / (1024 * 1024):.2f}MB) exceeds limit of {max_size_mb}MB",
            code="FILE_TOO_LARGE",
            details={"file_size_bytes": len(data), "max_size_bytes": max_bytes},
        )


def decode_text(data: bytes) -> str:
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def extract_pdf_text(data: bytes, filename: str) -> str:
    try:
        reader = PdfReader(io.BytesIO(data))
        pages = [page.extract_text() or "" for page in reader.pages]
    except Exception as e:
        hint = " (file may be password-protected)" if "encrypt" in str(e).lower() else ""
        raise IngestionError(
            f"PDF extraction failed for {filename}: {e}{hint}",
            code="EXTRACTION_ERROR",
            stage=ProcessingStage.EXTRACTING.value,
        ) from e
    return "\n".join(pages).strip()


def extract_text(data: bytes, filename: str) -> ExtractionResult:
    """Hash and extract an upload. Raises IngestionError on unreadable PDFs."""
    extension = extract_extension(filename)
    file_type = classify_file_type(extension)
    digest = content_hash(data)
    warnings: list[str] = []
    text = ""

    if file_type == FileType.PDF:
        text = extract_pdf_text(data, filename)
    elif file_type in (FileType.TEXT, FileType.CODE):
        text = decode_text(data)
    elif file_type == FileType.IMAGE:
        warnings.append("Image files: no OCR; only the filename will be processed.")
    elif file_type == FileType.SPREADSHEET:
        if extension in ("csv", "tsv"):
            text = decode_text(data)
        else:
            warnings.append("XLSX/XLS files: only CSV/TSV text is extracted; convert to CSV.")
    else:
        warnings.append(f"Unsupported file type: .{extension}. Only the filename will be processed.")

    if not text.strip() and file_type in (FileType.PDF, FileType.TEXT, FileType.CODE):
        warnings.append("Extracted text is empty. File may be corrupted or contain no text.")

    for warning in warnings:
        logger.info("%s: %s", filename, warning)

    return ExtractionResult(
        text=text,
        file_type=file_type,
        content_hash=digest,
        file_size_bytes=len(data),
        filename=filename,
        extension=extension,
        warnings=warnings,
    )
