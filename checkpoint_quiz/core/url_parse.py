"""
Video identity from YouTube URLs.
"""

import re
from urllib.parse import urlparse, parse_qs

from checkpoint_quiz.core.constants import YOUTUBE_URL_PATTERNS, ErrorCode
from checkpoint_quiz.core.error_codes import QuizError

_VIDEO_ID_RE = re.compile(r'^[a-zA-Z0-9_-]{11}$')


def extract_video_id(url: str) -> str | None:
    """
    Extract the 11-character video_id from a YouTube URL.
    Returns None if the URL is not a valid YouTube URL.
    """
    url = (url or '').strip()
    if not url:
        return None

    for pattern in YOUTUBE_URL_PATTERNS:
        m = re.search(pattern, url)
        if m:
            return m.group(1)

    # Fallback: 'v' query parameter on any youtube host
    parsed = urlparse(url)
    if 'youtube.com' in parsed.netloc or 'youtu.be' in parsed.netloc:
        v = parse_qs(parsed.query).get('v', [None])[0]
        if v and _VIDEO_ID_RE.match(v):
            return v

    return None


def validate_youtube_url(url: str) -> str:
    """
    Validate a YouTube URL and return the video_id.
    Raises QuizError if invalid.
    """
    video_id = extract_video_id(url)
    if not video_id:
        raise QuizError(f"Not a valid YouTube URL: {url}", code=ErrorCode.INVALID_URL)
    return video_id


def resolve_video_id(value: str) -> str:
    """Accept either a bare video id or a YouTube URL."""
    value = (value or '').strip()
    if _VIDEO_ID_RE.match(value):
        return value
    return validate_youtube_url(value)
