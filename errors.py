"""
Error taxonomy shared by the arrival engine.

  ConfigurationError: a required source location is unset
  NetworkError      : a fetch failed after retries, or timed out
  NotReadyError     : an artifact's first download is still in progress
  NotFoundError     : a stop reference resolved to no candidate
  DataFormatError   : a required static table is missing or malformed
"""


class TransitError(Exception):
    """Base class for engine errors."""


class ConfigurationError(TransitError):
    pass


class NetworkError(TransitError):
    pass


class NotReadyError(NetworkError):
    """No local copy yet; a background download has been started."""


class NotFoundError(TransitError):
    pass


class DataFormatError(TransitError):
    pass
