"""
Utility functions for file system operations and string sanitization.

This module provides helper functions for:
- Sanitizing user-provided filenames for safe filesystem usage
- Ensuring directory creation with proper error handling
- Building the object store folder layout for a yearbook
- Recognising paginated source documents among uploads
- Reducing image dimensions to an aspect ratio string
"""

from __future__ import annotations

import re
from math import gcd
from pathlib import Path
from typing import Iterable, Optional

# Pattern to match characters that are not safe for filesystem paths
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

# Owner names only keep ASCII letters and digits inside folder names
FOLDER_NAME_PATTERN = re.compile(r"[^a-zA-Z0-9]")

PDF_CONTENT_TYPES = {"application/pdf", "application/x-pdf"}


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a filesystem-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, filesystem-safe label or the fallback value

    Example:
        >>> sanitize_label("Page 1 (final).JPG", "upload")
        "page-1-final-.jpg"
        >>> sanitize_label("@#$", "upload")
        "upload"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Args:
        path: The directory path to create

    Returns:
        The same path object for chaining

    Raises:
        OSError: If directory creation fails due to permissions or other I/O errors
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def build_folder_path(root_folder: str, owner_name: str, owner_id: str, year: Optional[int] = None) -> str:
    """
    Build the object store folder for a yearbook's assets.

    Layout: ``<root>/<SafeOwnerName>_<owner_id>/yearbooks[/<year>]``

    Example:
        >>> build_folder_path("yearbuk_uploads", "St. Mary's High", "SM01", 2024)
        "yearbuk_uploads/StMarysHigh_SM01/yearbooks/2024"
    """
    safe_name = FOLDER_NAME_PATTERN.sub("", owner_name)
    folder = f"{root_folder}/{safe_name}_{owner_id}/yearbooks"
    if year:
        folder += f"/{year}"
    return folder


def allowed_pdf_extensions() -> Iterable[str]:
    """Extensions treated as paginated source documents."""
    return [".pdf"]


def is_paginated_source(filename: str, content_type: Optional[str] = None) -> bool:
    """Return True when an upload should be rasterized page by page."""
    if (content_type or "").lower() in PDF_CONTENT_TYPES:
        return True
    return Path(filename).suffix.lower() in allowed_pdf_extensions()


def aspect_ratio(width: float, height: float) -> Optional[str]:
    """
    Reduce a width/height pair to a ``W/H`` ratio string.

    Example:
        >>> aspect_ratio(1200, 1600)
        "3/4"
    """
    width, height = int(round(width)), int(round(height))
    if width <= 0 or height <= 0:
        return None
    divisor = gcd(width, height)
    return f"{width // divisor}/{height // divisor}"
