"""Router utilities."""

from bankrec.utils.exceptions import raise_http_error, status_for

__all__ = ["raise_http_error", "status_for"]
