"""
Artisan Cut compression for uploaded files.

Draft and verify calls both return ``{filename, file_type, description}``.
"""

from ..compression import TwoPassCompressor
from ..errors import CompressionError
from ..memory.config import MemoryConfig
from ..models import FileType

MAX_CONTENT_CHARS = 100_000

FILE_DRAFT_PROMPT = """ARTISAN CUT FOR FILES

Describe the uploaded file in the fewest words that keep everything you could
not infer back from fewer words: decisions, numbers, dates, entities, exact
terminology, behavioral directives, structure. Condense what is inferable and
remove noise, qualifiers and meta-commentary.

Return ONLY a JSON object:
{
  "filename": "[exact filename including extension]",
  "file_type": "[image|pdf|text|code|spreadsheet|other]",
  "description": "[artisan cut description]"
}"""

FILE_VERIFY_PROMPT = """Review the previous JSON output for accuracy and quality:

- filename is exact
- file_type is one of: image|pdf|text|code|spreadsheet|other
- description preserves all non-inferable information and drops noise

Return ONLY the improved JSON object with the same three keys."""

_VALID_TYPES = {t.value for t in FileType}


class FileCompressor(TwoPassCompressor):
    DRAFT_PROMPT = FILE_DRAFT_PROMPT
    VERIFY_PROMPT = FILE_VERIFY_PROMPT

    def __init__(self, llm=None, timeout=60.0, max_content_chars: int = MAX_CONTENT_CHARS):
        super().__init__(llm, timeout=timeout)
        self.max_content_chars = max_content_chars

    @classmethod
    def from_config(cls, config: MemoryConfig, llm=None):
        compressor = super().from_config(config, llm)
        compressor.max_content_chars = config.max_content_chars
        return compressor

    def format_input(self, text: str, metadata: dict) -> str:
        return f"File: {metadata['filename']}\nFile Type: {metadata['file_type']}\n\n{text}"

    def validate(self, parsed: dict, metadata: dict) -> dict:
        if not parsed.get("filename") or not parsed.get("file_type") or not parsed.get("description"):
            raise CompressionError(
                "Response missing required fields: filename, file_type, or description",
                code="VALIDATION_ERROR",
                details={"received": parsed},
            )
        if parsed["file_type"] not in _VALID_TYPES:
            raise CompressionError(
                f"Invalid file_type in response: {parsed['file_type']}",
                code="VALIDATION_ERROR",
                details={"valid_types": sorted(_VALID_TYPES)},
            )
        description = str(parsed["description"]).strip()
        if not description:
            raise CompressionError("Empty description", code="VALIDATION_ERROR")
        return {
            "filename": metadata.get("filename") or parsed["filename"],
            "file_type": parsed["file_type"],
            "description": description,
        }

    async def compress_file(self, text: str, filename: str, file_type: FileType) -> dict:
        """
        Compress extracted text. Files with no extractable text (images,
        unsupported types) are described from their name alone.
        """
        if len(text) > self.max_content_chars:
            text = text[: self.max_content_chars]
        body = text if text.strip() else f"(no extractable text; describe from filename: {filename})"
        return await self.compress(body, {"filename": filename, "file_type": file_type.value})
