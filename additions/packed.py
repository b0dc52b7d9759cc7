"""
Module for serving files from a WAD archive.

Supports:
- Serving any file of the archive by its tree path
- Deflate passthrough of records the archive already stores deflated,
  when the client accepts it (Accept-Encoding: deflate)
- Brotli compression when the client accepts it (Accept-Encoding: br)
- Plain content otherwise
- Auto-download from URL if the archive file is not present locally
"""

import os
from typing import Optional
from urllib.parse import urlparse

import httpx
import brotli
from fastapi import Request
from fastapi.responses import Response

from wadfile.packer import PackedArchive

BROTLI_QUALITY = 5
DOWNLOAD_TIMEOUT = 300.0

# Global archive instance (initialized by init_packed_archive)
_archive: Optional[PackedArchive] = None


def _is_url(path: str) -> bool:
    """Check if the path is a URL."""
    return path.startswith("http://") or path.startswith("https://")


def _get_filename_from_url(url: str) -> str:
    """Extract filename from URL."""
    filename = os.path.basename(urlparse(url).path)
    if not filename:
        filename = "archive.wad"
    return filename


async def _download_file(url: str, dest_path: str) -> bool:
    """
    Download a file from URL to destination path.

    Returns:
        True if download succeeded, False otherwise
    """
    print(f"Downloading archive from {url}...")
    try:
        async with httpx.AsyncClient(timeout=httpx.Timeout(DOWNLOAD_TIMEOUT), follow_redirects=True) as client:
            async with client.stream('GET', url) as response:
                response.raise_for_status()

                content_length = response.headers.get('content-length')
                total_size = int(content_length) if content_length else 0
                downloaded = 0

                with open(dest_path, 'wb') as f:
                    async for chunk in response.aiter_bytes(65536):
                        f.write(chunk)
                        downloaded += len(chunk)
                        if total_size > 0:
                            percent = (downloaded / total_size) * 100
                            print(f"\r  Downloaded: {downloaded / 1024 / 1024:.1f} MB ({percent:.1f}%)", end="", flush=True)
                        else:
                            print(f"\r  Downloaded: {downloaded / 1024 / 1024:.1f} MB", end="", flush=True)

                print()
                print(f"  Saved to: {dest_path}")
                return True
    except httpx.HTTPStatusError as e:
        print(f"Failed to download: HTTP {e.response.status_code}")
    except httpx.HTTPError as e:
        print(f"Error downloading file: {e}")

    if os.path.exists(dest_path):
        os.remove(dest_path)
    return False


async def resolve_packed_source(source: str) -> Optional[str]:
    """
    Resolve an archive source to a local file path.

    A local path is returned as-is. A URL is downloaded into the current
    directory unless a non-empty file of the same name is already there.

    Returns:
        Local file path, or None if download failed
    """
    if not _is_url(source):
        return source

    local_path = _get_filename_from_url(source)
    if os.path.isfile(local_path) and os.path.getsize(local_path) > 0:
        print(f"Using existing archive: {local_path} ({os.path.getsize(local_path)} bytes)")
        return local_path

    if await _download_file(source, local_path):
        return local_path
    return None


async def init_packed_archive(source: str) -> Optional[PackedArchive]:
    """
    Initialize the archive. Must be called before using get_packed_file().

    Args:
        source: Path to the WAD file or URL to download it from

    Returns:
        Initialized PackedArchive instance, or None if the source could not be resolved
    """
    global _archive

    archive_path = await resolve_packed_source(source)
    if archive_path is None:
        print(f"Failed to resolve packed archive source: {source}")
        return None

    if not os.path.isfile(archive_path):
        print(f"Archive file not found: {archive_path}")
        return None

    archive = PackedArchive(archive_path)
    await archive.init()
    _archive = archive

    print(f"Loaded WAD archive: {archive_path} (version 0x{archive.wad.version:03X})")
    print(f"  Folders: {len(archive.list_folders())}")
    print(f"  Files: {len(archive.list_files())}")
    return _archive


def close_packed_archive() -> None:
    """Forget the global archive instance."""
    global _archive
    _archive = None


def is_initialized() -> bool:
    return _archive is not None and _archive.initialized


def _client_accepts(request: Request, encoding: str) -> bool:
    """Check if the client lists encoding in Accept-Encoding with a non-zero q-value."""
    accept_encoding = request.headers.get("accept-encoding", "").lower()
    for part in accept_encoding.split(","):
        name, _, params = part.partition(";")
        if name.strip() != encoding:
            continue

        quality = 1.0
        for param in params.split(";"):
            key, _, value = param.partition("=")
            if key.strip() == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        return quality > 0
    return False


def _get_response_headers(media_type: str, encoding: Optional[str] = None) -> dict:
    headers = {
        "Cross-Origin-Opener-Policy": "same-origin",
        "Cross-Origin-Embedder-Policy": "require-corp",
        "Content-Type": media_type
    }

    if encoding:
        headers["Content-Encoding"] = encoding
        headers["Vary"] = "Accept-Encoding"

    return headers


def _get_media_type(path: str) -> str:
    """Get appropriate media type based on file extension."""
    lower_path = path.lower()

    if lower_path.endswith(".xml"):
        return "application/xml"
    if lower_path.endswith(".lua"):
        return "text/plain"
    if lower_path.endswith(".txt"):
        return "text/plain"
    if lower_path.endswith(".json"):
        return "application/json"
    if lower_path.endswith(".png"):
        return "image/png"
    if lower_path.endswith(".jpg") or lower_path.endswith(".jpeg"):
        return "image/jpeg"
    if lower_path.endswith(".dds"):
        return "image/vnd-ms.dds"
    if lower_path.endswith(".wav"):
        return "audio/wav"
    if lower_path.endswith(".ogg"):
        return "audio/ogg"

    return "application/octet-stream"


async def get_packed_file(path: str, request: Request) -> Optional[Response]:
    """
    Get a file from the archive.

    Compressed archives keep most records as zlib streams, which is exactly
    the HTTP 'deflate' content coding, so those are sent without inflating
    when the client accepts deflate. Otherwise the content is inflated and
    brotli-compressed for clients that accept br, or sent plain.

    Returns:
        Response with file data, or None if file not found or archive not initialized
    """
    if not is_initialized():
        return None

    if not _archive.exists(path):
        return None

    media_type = _get_media_type(path)

    if _client_accepts(request, "deflate"):
        async with _archive.open(path, keep_deflate=True) as f:
            data = f.read()
            deflated = f.deflated
        if deflated:
            return Response(content=data, headers=_get_response_headers(media_type, encoding="deflate"))
    else:
        data = await _archive.read_file(path)

    if _client_accepts(request, "br"):
        compressed = brotli.compress(data, quality=BROTLI_QUALITY)
        return Response(content=compressed, headers=_get_response_headers(media_type, encoding="br"))

    return Response(content=data, headers=_get_response_headers(media_type))


def get_header_blob() -> Optional[bytes]:
    """Get the archive's embedded header blob, if it has one."""
    if not is_initialized():
        return None
    return _archive.header_blob or None


def list_files(folder: Optional[str] = None) -> list:
    if not is_initialized():
        return []
    return _archive.list_files(folder)


def list_folders() -> list:
    if not is_initialized():
        return []
    return _archive.list_folders()
