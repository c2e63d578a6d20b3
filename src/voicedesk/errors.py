"""
Error kinds raised by the external-service adapters.

None of these end a session: the transcript stream, response pipeline and
session catch them, log them, and carry on (the caller hears silence).
"""


class MediatorError(Exception):
    """Base class for collaborator failures inside a live session."""
    pass


class RecognitionStreamError(MediatorError):
    """The streaming transcription connection failed."""
    pass


class ReplyGenerationError(MediatorError):
    """The language model did not return a usable reply."""
    pass


class SynthesisError(MediatorError):
    """Speech synthesis failed or returned no audio."""
    pass
