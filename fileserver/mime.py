"""
MIME type lookup by file extension.
"""

import os
from types import MappingProxyType
from typing import Mapping

DEFAULT_MIME_TYPE = "application/octet-stream"

MIME_TYPES: Mapping[str, str] = MappingProxyType({
    "html": "text/html",
    "txt": "text/plain",
    "jpg": "image/jpeg",
    "json": "application/json",
})


def mime_type(file_name: str) -> str:
    """
    Return the MIME type for a file name based on its extension.

    Args:
        file_name: File name or path

    Returns:
        MIME type string, application/octet-stream when unknown
    """
    base_name = os.path.basename(file_name)
    dot_index = base_name.rfind(".")
    if dot_index <= 0 or dot_index == len(base_name) - 1:
        return DEFAULT_MIME_TYPE

    extension = base_name[dot_index + 1:].lower()
    return MIME_TYPES.get(extension, DEFAULT_MIME_TYPE)
