"""
Export of live state into a streaming archive.
"""

from .serializer import (
    ExportOptions,
    ExportReport,
    ExportSerializer,
    ExportSnapshot,
    ExportStream,
    photo_filename,
)

__all__ = [
    "ExportOptions",
    "ExportReport",
    "ExportSerializer",
    "ExportSnapshot",
    "ExportStream",
    "photo_filename",
]
