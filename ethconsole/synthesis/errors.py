"""Errors raised while recovering an interface or generating a surface."""


class SynthesisError(Exception):
    """A stage of interface recovery failed."""


class IdentityProbeFailure(SynthesisError):
    """The contract name could not be read. Expected; always caught."""


class GenerationError(Exception):
    """The generation service failed or returned no usable content."""
