from __future__ import annotations

from typing import Optional


class KasaError(Exception):
    pass


class MalformedResponse(KasaError):
    pass


class DeviceError(KasaError):
    """Failure scoped to a single device; the run carries on without it."""


class DeviceOffline(DeviceError):
    pass


class DeviceUnreachable(DeviceError):
    pass


class CloudError(KasaError):
    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class TransientCloudError(CloudError):
    pass


class AuthenticationError(CloudError):
    pass


class SinkError(KasaError):
    pass
