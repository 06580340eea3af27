"""Exceptions raised by the device core."""

from .const import CMD_TMP_WRITE, command_name


class DeviceError(Exception):
    """Base class for every device-side failure."""


class DeviceConnectionError(DeviceError):
    """Transport could not be opened or was lost. Retryable."""
    retryable = True


class ConnectionRefused(DeviceConnectionError):
    pass


class ConnectionTimeout(DeviceConnectionError):
    pass


class NotConnected(DeviceConnectionError):
    pass


class AuthenticationFailed(DeviceError):
    """COM password rejected, or required and not configured."""

    def __init__(self, message="Device authentication failed", status=None):
        super().__init__(message)
        self.status = status


class NoSessionId(DeviceError):
    def __init__(self, message="No session id available for authentication"):
        super().__init__(message)


class MalformedResponse(DeviceError):
    """Reply shorter than the 8-byte header or otherwise undecodable."""

    def __init__(self, message, data=b''):
        super().__init__(message)
        self.data = data


class CommandRejected(DeviceError):
    """Device answered with a status other than CMD_ACK_OK."""

    def __init__(self, command, status, message=None):
        if message is None:
            message = f"{command_name(command)} rejected with status {status}"
        super().__init__(message)
        self.command = command
        self.status = status


class TemplateWriteFailed(CommandRejected):
    def __init__(self, status, message=None):
        super().__init__(CMD_TMP_WRITE, status,
                         message or f"Template write failed with status {status}")


class UserNotFoundAfterWrite(DeviceError):
    def __init__(self, user_id):
        super().__init__(f"User {user_id} not found on device after rewrite")
        self.user_id = user_id


class DeviceBusy(DeviceError):
    """Another operation owns the device (a sync run or a held lock)."""


class Cancelled(Exception):
    """Bulk operation stopped on request. Not a failure."""

    def __init__(self, message="Sync cancelled by user"):
        super().__init__(message)
