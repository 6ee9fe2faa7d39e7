class GuidanceError(Exception):
    """Base error for the guidance package."""


class FrameMismatchError(GuidanceError):
    pass


class ConfigurationError(GuidanceError, ValueError):
    pass
