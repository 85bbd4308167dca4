"""
RouteGuard Backend — File Ingestion Service
=============================================

What:  Validates uploaded file content (multipart or base64) against a
       route's UploadPolicy and stores it on disk, embedded, or both.
Why:   Upload handling is declared per route; handlers receive finished
       UploadResults and never touch raw bytes or paths themselves.
How:   Validation runs in a fixed order, cheapest first, and the first
       failure rejects the file with a specific reason.
Who:   RequestPipeline (file ingestion stage) and the files handler
       (delete/read of stored files).

Validation order:
    1. Size:        oversize, then empty
    2. Declared:    the client-declared MIME type is in the allow-list
    3. Extension:   the filename extension is in the allow-list
    4. Sniffing:    libmagic reads the header bytes; the detected type must
                    be allowed and agree with the declared type
    5. Filename:    sanitized name must be non-empty

    Why both declared AND sniffed type:
        - A declared type alone is whatever the client says
        - Sniffing catches renamed files (PNG bytes posted as image/jpeg)

Storage:
    storage_root/
    └── 2024/
        └── 01/
            └── 15/
                └── 3f2b9c...e1.png      (uuid4 hex, never user input)

    Files are created with exclusive-create ("xb"), so two writers never
    share a file. delete() and read() refuse any path that resolves outside
    storage_root.
"""

import base64
import binascii
import hashlib
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import aiofiles
import aiofiles.os
from starlette.datastructures import UploadFile

from routeguard.exceptions import FileStorageError, UploadRejectedError
from routeguard.schemas.upload import UploadResult
from routeguard.services.route_registry import UploadPolicy

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"

# ── Extension Fallbacks ───────────────────────────────────────────────────
# What: Used when the client filename carries no allowed extension
MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "text/csv": "csv",
    "application/json": "json",
}

# libmagic spellings that name the same type
_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "image/x-png": "image/png",
    "application/x-pdf": "application/pdf",
}

# Sniffing cannot tell textual formats apart (JSON and CSV sniff as text/plain)
_TEXTUAL_TYPES = frozenset({"application/json", "application/csv"})

_DATA_URI_RE = re.compile(r"^data:([\w.+-]+/[\w.+-]+)?(?:;[\w-]+=[\w.-]+)*;base64,(.*)$", re.DOTALL)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_UNNAMED = "unnamed"


def format_bytes(size: int) -> str:
    """10485760 → '10 MB'; 1536 → '1.5 KB'."""
    units = ("B", "KB", "MB", "GB")
    value = float(size)
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    rendered = f"{value:.2f}".rstrip("0").rstrip(".")
    return f"{rendered} {units[unit]}"


def normalize_mime(mime_type: Optional[str]) -> str:
    mime = (mime_type or "").split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(mime, mime)


def _is_textual(mime_type: str) -> bool:
    return mime_type.startswith("text/") or mime_type in _TEXTUAL_TYPES


class FileIngestor:
    """
    Validates and stores uploaded files for one storage root.

    Instances hold no per-request state; one is shared by all requests.
    """

    def __init__(self, storage_root: Union[str, Path], base_url: str = "/uploads"):
        self.storage_root = Path(storage_root).resolve()
        self.storage_root.mkdir(parents=True, exist_ok=True)
        self.base_url = base_url
        logger.info("FileIngestor initialized with storage_root=%s", self.storage_root)

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def sanitize_filename(filename: Optional[str]) -> str:
        """
        Reduce a client filename to a safe basename.

        Directory parts are dropped, runs of unsafe characters become "_",
        leading dots are stripped. Returns "unnamed" when nothing is left.
        """
        name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1]
        name = _UNSAFE_FILENAME_CHARS.sub("_", name).lstrip(".")
        name = name[:255]
        return name or _UNNAMED

    @staticmethod
    def content_hash(content: bytes) -> str:
        return hashlib.sha256(content).hexdigest()

    @staticmethod
    def detect_mime(content: bytes) -> str:
        """Sniff the MIME type from the leading bytes with libmagic."""
        import magic

        try:
            return normalize_mime(magic.from_buffer(content[:8192], mime=True)) or DEFAULT_MIME_TYPE
        except Exception as e:
            logger.error("MIME type detection failed: %s", e)
            raise FileStorageError(
                message="Could not verify file type",
                context={"error": str(e)},
            ) from e

    @staticmethod
    def _extension_of(filename: str) -> str:
        suffix = Path(filename).suffix
        return suffix[1:].lower() if suffix else ""

    @staticmethod
    def decode_embedded(data: Union[str, bytes], db_format: str = "base64") -> bytes:
        """Recover the original bytes from an UploadResult.embedded_data value."""
        if db_format == "base64":
            return base64.b64decode(data)
        return data if isinstance(data, bytes) else data.encode("latin-1")

    def public_url(self, relative_path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{relative_path.lstrip('/')}"

    # ── Validation ────────────────────────────────────────────────────────

    def validate(
        self,
        content: bytes,
        filename: Optional[str],
        declared_type: Optional[str],
        policy: UploadPolicy,
    ) -> Tuple[str, str, str]:
        """
        Run the validation chain.

        Returns:
            (sanitized_name, declared_mime, detected_mime)

        Raises:
            UploadRejectedError with the first failing reason.
        """
        size = len(content)
        if size > policy.max_size:
            raise self._reject(f"File size exceeds limit of {format_bytes(policy.max_size)}", filename, size=size)
        if size == 0:
            raise self._reject("File is empty", filename)

        declared = normalize_mime(declared_type)
        if declared and declared != DEFAULT_MIME_TYPE and declared not in policy.allowed_types:
            raise self._reject(f"File type not allowed: {declared}", filename)

        extension = self._extension_of(filename or "")
        if not extension:
            raise self._reject("File extension is missing", filename)
        if extension not in policy.allowed_extensions:
            raise self._reject(f"File extension not allowed: {extension}", filename)

        detected = self.detect_mime(content)
        if not declared or declared == DEFAULT_MIME_TYPE:
            declared = detected
            if declared not in policy.allowed_types:
                raise self._reject(f"File type not allowed: {declared}", filename)
        if not self._types_agree(declared, detected, policy):
            raise self._reject(
                "File content does not match allowed types",
                filename,
                declared=declared,
                detected=detected,
            )

        sanitized = self.sanitize_filename(filename)
        if sanitized == _UNNAMED:
            raise self._reject("Invalid filename", filename)

        return sanitized, declared, detected

    @staticmethod
    def _types_agree(declared: str, detected: str, policy: UploadPolicy) -> bool:
        if detected == declared:
            return detected in policy.allowed_types
        return _is_textual(declared) and _is_textual(detected)

    @staticmethod
    def _reject(reason: str, filename: Optional[str], **context: Any) -> UploadRejectedError:
        logger.warning("Upload rejected (%s): %s %s", filename, reason, context or "")
        return UploadRejectedError(message=reason, context={"filename": filename, **context})

    # ── Ingestion ─────────────────────────────────────────────────────────

    async def ingest_multipart(
        self, upload: UploadFile, policy: UploadPolicy, field_name: str = "file"
    ) -> UploadResult:
        """Validate and store one multipart part."""
        # One byte past the limit is enough to detect oversize
        content = await upload.read(policy.max_size + 1)
        return await self._ingest(content, upload.filename, upload.content_type, policy, field_name)

    async def ingest_base64(
        self,
        payload: str,
        filename: Optional[str],
        policy: UploadPolicy,
        field_name: str = "file",
    ) -> UploadResult:
        """
        Validate and store base64 content.

        `payload` may carry a `data:<mime>;base64,` prefix; its MIME type is
        then the declared type. Without one the sniffed type is used.
        """
        declared_type: Optional[str] = None
        match = _DATA_URI_RE.match(payload.strip())
        if match:
            declared_type, payload = match.group(1), match.group(2)

        encoded = "".join(payload.split())
        # base64 inflates by 4/3; anything longer cannot decode under the limit
        if len(encoded) > (policy.max_size * 4) // 3 + 4:
            raise self._reject(
                f"File size exceeds limit of {format_bytes(policy.max_size)}",
                filename,
                encoded_size=len(encoded),
            )
        try:
            content = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise self._reject("Invalid base64 encoding", filename) from e

        if not filename:
            mime_type = declared_type or (self.detect_mime(content) if content else "")
            filename = f"{field_name}.{MIME_EXTENSIONS.get(normalize_mime(mime_type), 'bin')}"
        return await self._ingest(content, filename, declared_type, policy, field_name)

    async def _ingest(
        self,
        content: bytes,
        filename: Optional[str],
        declared_type: Optional[str],
        policy: UploadPolicy,
        field_name: str,
    ) -> UploadResult:
        sanitized, declared, detected = self.validate(content, filename, declared_type, policy)

        result: Dict[str, Any] = {
            "field_name": field_name,
            "original_name": sanitized,
            "detected_mime_type": detected,
            "declared_mime_type": declared,
            "size_bytes": len(content),
            "content_hash": self.content_hash(content),
            "storage_mode": policy.storage_mode,
        }

        if policy.writes_to_disk:
            extension = self._storage_extension(sanitized, detected, policy)
            relative_path = await self.store(content, extension)
            result["relative_path"] = relative_path
            result["stored_name"] = relative_path.rsplit("/", 1)[-1]
            result["url"] = self.public_url(relative_path)

        if policy.embeds_content:
            if policy.db_format == "base64":
                result["embedded_data"] = base64.b64encode(content).decode("ascii")
            else:
                result["embedded_data"] = content
            result["db_format"] = policy.db_format

        logger.info(
            "Upload accepted: %s (%s, %d bytes, %s)",
            sanitized, detected, len(content), policy.storage_mode.value,
        )
        return UploadResult(**result)

    def _storage_extension(self, filename: str, detected: str, policy: UploadPolicy) -> str:
        extension = self._extension_of(filename)
        if extension and extension in policy.allowed_extensions:
            return extension
        return MIME_EXTENSIONS.get(detected, "bin")

    # ── Storage ───────────────────────────────────────────────────────────

    def _generate_storage_path(self, extension: str) -> Tuple[Path, str]:
        """YYYY/MM/DD/<uuid4 hex>.<ext> under the storage root."""
        date_dir = datetime.now(timezone.utc).strftime("%Y/%m/%d")
        relative_path = f"{date_dir}/{uuid.uuid4().hex}.{extension}"
        return self.storage_root / relative_path, relative_path

    async def store(self, content: bytes, extension: str) -> str:
        """
        Write content to a fresh file and return its relative path.

        Raises:
            FileStorageError if the directory or file cannot be created.
        """
        absolute_path, relative_path = self._generate_storage_path(extension)
        try:
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(absolute_path, "xb") as f:
                await f.write(content)
        except OSError as e:
            logger.error("Failed to store file at %s: %s", absolute_path, e)
            raise FileStorageError(
                message="Failed to save uploaded file",
                context={"path": str(absolute_path), "os_error": str(e)},
            ) from e

        logger.info("File stored: %s (%d bytes)", relative_path, len(content))
        return relative_path

    def _resolve_inside_root(self, relative_path: str) -> Optional[Path]:
        if not relative_path or "\x00" in relative_path:
            return None
        candidate = (self.storage_root / relative_path.lstrip("/")).resolve()
        if not candidate.is_relative_to(self.storage_root):
            logger.warning("Path traversal attempt blocked: %r", relative_path)
            return None
        return candidate

    async def delete(self, relative_path: str) -> bool:
        """Remove a stored file. False when missing or outside the storage root."""
        path = self._resolve_inside_root(relative_path)
        if path is None or not await aiofiles.os.path.isfile(path):
            return False
        try:
            await aiofiles.os.remove(path)
        except OSError as e:
            logger.error("Failed to delete %s: %s", path, e)
            raise FileStorageError(
                message="Failed to delete file",
                context={"path": relative_path, "os_error": str(e)},
            ) from e
        logger.info("File deleted: %s", relative_path)
        return True

    async def read(self, relative_path: str) -> Optional[bytes]:
        """Return a stored file's bytes, or None when missing or outside the root."""
        path = self._resolve_inside_root(relative_path)
        if path is None or not await aiofiles.os.path.isfile(path):
            return None
        async with aiofiles.open(path, "rb") as f:
            return await f.read()


# ══════════════════════════════════════════════════════════════════════════
# Base64 Discovery in JSON Bodies
# ══════════════════════════════════════════════════════════════════════════

def discover_base64_files(body: Any) -> List[Tuple[str, str, Optional[str]]]:
    """
    Find base64 file payloads in a decoded JSON body.

    Recognized shapes:
        {"file_data": "...", "file_name": "a.png"}
        {"avatar_base64": "...", "avatar_name": "a.png"}
        {"avatar": "data:image/png;base64,...", "avatar_name": "a.png"}
        {"files": [{"data": "...", "name": "a.png"}, ...]}

    Returns:
        [(field_name, payload, filename_or_None), ...] in body order.
    """
    if not isinstance(body, dict):
        return []

    found: List[Tuple[str, str, Optional[str]]] = []

    def _name(key: str) -> Optional[str]:
        value = body.get(key)
        return value if isinstance(value, str) and value else None

    for key, value in body.items():
        if key == "files" and isinstance(value, list):
            for index, item in enumerate(value):
                if isinstance(item, dict) and isinstance(item.get("data"), str):
                    name = item.get("name")
                    found.append((f"files[{index}]", item["data"], name if isinstance(name, str) else None))
            continue
        if not isinstance(value, str):
            continue
        if key == "file_data":
            found.append(("file", value, _name("file_name")))
        elif key.endswith("_base64"):
            prefix = key[: -len("_base64")]
            found.append((prefix, value, _name(f"{prefix}_name")))
        elif _DATA_URI_RE.match(value):
            found.append((key, value, _name(f"{key}_name")))

    return found
