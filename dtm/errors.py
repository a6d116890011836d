from __future__ import annotations


class DtmError(Exception):
    """Base class for every error raised by dtm."""


class DecodeError(DtmError, ValueError):
    """A binary history record could not be decoded."""


class MalformedRecordError(DecodeError):
    pass


class UnknownVariantError(DecodeError):
    def __init__(self, enum_name: str, value: int):
        super().__init__(f"unknown {enum_name} value: {value}")
        self.enum_name = enum_name
        self.value = value


class CodecError(DtmError):
    """A tensor payload could not be turned into pixels."""


class SizeMismatchError(CodecError):
    def __init__(self, expected: int, actual: int):
        super().__init__(f"tensor size mismatch: expected {expected} samples, got {actual}")
        self.expected = expected
        self.actual = actual


class UnsupportedChannelsError(CodecError):
    def __init__(self, channels: int):
        super().__init__(f"unsupported channel count: {channels}")
        self.channels = channels


class StoreError(DtmError):
    """An external project store could not be opened or queried."""


class CacheError(DtmError):
    """The local cache database rejected an operation."""


class SyncError(DtmError):
    def __init__(self, project_path: str, cause: BaseException):
        super().__init__(f"failed to sync {project_path}: {cause}")
        self.project_path = project_path
        self.cause = cause
