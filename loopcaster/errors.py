"""Exceptions raised by the scheduler, supervisor and control surface."""


class LoopCasterError(Exception):
    pass


class ConfigurationError(LoopCasterError, ValueError):
    """A stream configuration that can never start as written. Not retried."""


class MediaNotFoundError(ConfigurationError):
    def __init__(self, reference):
        super().__init__(f"Primary media not found: {reference}")
        self.reference = reference


class StreamNotFoundError(LoopCasterError, KeyError):
    def __init__(self, stream_id):
        super().__init__(stream_id)
        self.stream_id = stream_id

    def __str__(self):
        return f"Unknown stream: {self.stream_id}"


class StreamAlreadyActiveError(LoopCasterError):
    def __init__(self, stream_id, state):
        super().__init__(f"Stream {stream_id} already has an encoder process ({state})")
        self.stream_id = stream_id
        self.state = state


class SpawnError(LoopCasterError):
    """The encoder could not be launched or died before it was confirmed running."""

    def __init__(self, message, returncode=None):
        super().__init__(message)
        self.returncode = returncode
