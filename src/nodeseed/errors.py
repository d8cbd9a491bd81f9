"""Exception types raised while provisioning identity and configuration."""

from __future__ import annotations


class NodeseedError(Exception):
    """Base class for all nodeseed errors."""


class InputError(NodeseedError):
    """Raised when a value cannot be read from standard input."""


class ConflictingArgumentsError(NodeseedError):
    """Raised when mutually exclusive options are supplied together."""


class CertificateError(NodeseedError):
    """Raised when existing certificate material cannot be used.

    Covers malformed PEM data, a key that does not match its certificate,
    a half-present pair and permission problems. Never treated as absence.
    """


class CertificateNotFound(CertificateError):
    """Raised when neither the certificate nor the key file exists."""


class ConfigError(NodeseedError):
    """Raised when a configuration file cannot be read, parsed or written."""


class ConfigNotFoundError(ConfigError, FileNotFoundError):
    """Raised when the configuration file does not exist."""


class HashingError(NodeseedError):
    """Raised when the password hashing primitive fails."""


class ActorStoppedError(NodeseedError):
    """Raised when a mutation is submitted to an actor that is not serving."""


class GenerateError(NodeseedError):
    """Bootstrap failure tagged with the stage that failed."""

    def __init__(self, stage: str, cause: BaseException) -> None:
        super().__init__(f"{stage}: {cause}")
        self.stage = stage
        self.cause = cause
