# remote_paths.py
import re
from urllib.parse import quote, unquote

# Characters SharePoint / OneDrive refuse in item names
_DISALLOWED = re.compile(r'["*:<>?\\|\x00-\x1f]')
_FILE_NAME_DISALLOWED = re.compile(r'[/\\:*?"<>|]')


def sanitize_segment(segment: str) -> str:
    """Replace disallowed characters in a single path segment with '_'."""
    return _DISALLOWED.sub("_", segment)


def sanitize_file_name(name: str) -> str:
    """Make a bare file name safe for both the local export folder and the drive."""
    return _FILE_NAME_DISALLOWED.sub("_", name)


def normalize(path: str) -> str:
    """
    Turn a logical '/'-separated destination into a transport-safe path.

    Each segment is decoded, cleaned of disallowed characters and
    percent-encoded on its own, so running the result through normalize()
    again gives the same string. Segments are never merged, dropped or
    reordered.
    """
    return "/".join(quote(sanitize_segment(unquote(seg)), safe="") for seg in path.split("/"))


def display_path(safe_path: str) -> str:
    """Inverse of the encoding step, for logs and reports."""
    return "/".join(unquote(seg) for seg in safe_path.split("/"))


def build_remote_path(base, rel_path):
    """
    Join a remote root and a relative path, fixing backslashes and stray
    leading/trailing separators.
    """
    rel_path = rel_path.replace("\\", "/")
    if base:
        base = base.replace("\\", "/")
        path = f"{base.rstrip('/')}/{rel_path.lstrip('/')}"
    else:
        path = rel_path.lstrip("/")
    while "//" in path:
        path = path.replace("//", "/")
    return path.strip("/")
