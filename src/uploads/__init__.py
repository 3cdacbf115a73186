"""
Upload lifecycle: storage, id resolution and time-based expiry of uploaded videos.
"""

__version__ = "1.0.0"

from .manager import UploadManager, UploadedFile, is_valid_file_id

__all__ = [
    "UploadManager",
    "UploadedFile",
    "is_valid_file_id",
]
