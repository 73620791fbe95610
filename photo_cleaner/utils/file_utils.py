"""
File operation utilities
"""

from pathlib import Path
from typing import List

IMAGE_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.bmp', '.gif', '.tiff', '.webp', '.heic'}


def get_image_files(directory: str, recursive: bool = True) -> List[str]:
    """Get all image files in directory, sorted for a stable scan order"""
    path = Path(directory)
    candidates = path.rglob('*') if recursive else path.glob('*')

    image_files = {
        f for f in candidates
        if f.is_file() and f.suffix.lower() in IMAGE_EXTENSIONS
    }
    return sorted(str(f) for f in image_files)


def format_file_size(size_bytes: int) -> str:
    """Format file size in human readable format"""
    size = float(size_bytes)
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size < 1024.0:
            return f"{size:.2f} {unit}"
        size /= 1024.0
    return f"{size:.2f} PB"
