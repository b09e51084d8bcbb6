from pathlib import PurePosixPath
from typing import Iterable
import urllib.parse

import regex

# characters which are never valid in a filename on common filesystems
_ILLEGAL = regex.compile(r'[/\?<>\\:\*\|"\p{Cc}]')
_RESERVED = regex.compile(r'^\.+$')
_WINDOWS_RESERVED = regex.compile(r'^(con|prn|aux|nul|com[0-9]|lpt[0-9])(\..*)?$', flags=regex.IGNORECASE)
_WINDOWS_TRAILING = regex.compile(r'[\. ]+$')

MAX_SEGMENT_LENGTH = 255

def sanitize_path_segment(segment: str, replacement: str = "_") -> str:
    """
    Makes `segment` usable as a single directory or file name by replacing every
    invalid character with `replacement`. Never returns an empty segment.
    """
    res = _ILLEGAL.sub(replacement, segment)
    if _RESERVED.match(res) or _WINDOWS_RESERVED.match(res):
        res = replacement
    res = _WINDOWS_TRAILING.sub(replacement, res)
    res = res[:MAX_SEGMENT_LENGTH]
    return res or replacement

def new_local_path(segments: Iterable[str]) -> PurePosixPath:
    return PurePosixPath(*(sanitize_path_segment(s) for s in segments))

def reports_url(base: str, rel_path: PurePosixPath) -> str:
    """
    Appends the percent-encoded segments of `rel_path` to the `base` url.
    The result always ends with a slash so it points at the report directory.
    """
    url = base if base.endswith("/") else base + "/"
    for part in rel_path.parts:
        url += urllib.parse.quote(part, safe="") + "/"
    return url
