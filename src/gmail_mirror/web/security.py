"""Bearer secret check for the scheduled sync trigger."""

from __future__ import annotations

import secrets
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

BEARER_PREFIX = "Bearer "


@dataclass(slots=True)
class BearerSecretGuard:
    """Compare the ``Authorization`` header against a configured static secret."""

    secret: str | None

    def validate(self, request: Request) -> None:
        """Raise 401 unless the request carries ``Bearer <secret>``."""

        header = request.headers.get("authorization", "")
        if not self.secret or not header.startswith(BEARER_PREFIX):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
            )
        supplied = header.removeprefix(BEARER_PREFIX)
        if not secrets.compare_digest(supplied.encode(), self.secret.encode()):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
            )


__all__ = ["BEARER_PREFIX", "BearerSecretGuard"]
