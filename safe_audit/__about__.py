"""Metadata for safe_audit."""

__all__ = [
    "__title__",
    "__version__",
    "__description__",
    "__credits__",
    "__requires_python__",
]

__title__ = "safe_audit"
__version__ = "0.1.0"
__description__ = (
    "Website auditing behind an SSRF-safe fetch layer, admission control and rate limits."
)
__credits__ = [
    {"name": "Matthew D. Martin", "email": "matthewdeanmartin@users.noreply.github.com"}
]
__requires_python__ = ">=3.9"
