"""
gitcity.services.errors — Service-Layer Failures
==================================================

Services raise :class:`ServiceError` with the HTTP status the caller
should see; ``gitcity.api.main`` turns it into a JSON error response.
"""

from __future__ import annotations


class ServiceError(Exception):
    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(detail)
        self.status_code = status_code
        self.detail = detail

    def __repr__(self) -> str:
        return f"ServiceError({self.status_code}, {self.detail!r})"
