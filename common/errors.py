from typing import Any


class PipelineError(Exception):
    """Base class for every failure raised inside the pipeline."""


class CaptureError(PipelineError):
    """Navigation timeout, missing selector, bad HTTP status or browser crash."""


class DecodeError(PipelineError):
    """Image bytes could not be decoded."""


class StorageError(PipelineError):
    """Blob storage read or write failed."""


class DatastoreError(PipelineError):
    pass


class StaleRecordError(DatastoreError):
    """The record changed between read and conditional write."""


class TransportError(PipelineError):
    pass


class PartialDeliveryError(TransportError):
    """Some channels were delivered; ``remaining`` is the job narrowed to the rest."""

    def __init__(self, message: str, remaining: Any) -> None:
        super().__init__(message)
        self.remaining = remaining


class EnqueueError(PipelineError):
    pass


def describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"
