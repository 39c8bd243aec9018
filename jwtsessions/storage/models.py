from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

# Pointer value written into a refresh record once its access token is flushed
CLEARED_ACCESS_UID = "0"
CLEARED_ACCESS_EXPIRATION = 0


@dataclass
class RefreshRecord:
    uid: str
    csrf: str
    access_uid: str
    access_expiration: int
    expiration: int
    namespace: Optional[str] = None

    @property
    def access_cleared(self) -> bool:
        return (
            self.access_uid == CLEARED_ACCESS_UID
            and self.access_expiration == CLEARED_ACCESS_EXPIRATION
        )


@dataclass
class AccessRecord:
    uid: str
    csrf: str
    expiration: int
