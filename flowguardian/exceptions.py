class LeakAnalysisError(Exception):
    """Base class for errors raised while analyzing an image for leaks."""


class InputError(LeakAnalysisError, ValueError):
    """The image buffer is missing or empty."""


class ConfigurationAbsent(LeakAnalysisError):
    """Gemini credentials are not configured."""


class ServiceError(LeakAnalysisError):
    """The Gemini call failed: network error, timeout or non-2xx status."""


class SchemaError(LeakAnalysisError):
    """The Gemini response text does not match the leak report contract."""


class RenderError(LeakAnalysisError):
    """Annotations could not be drawn on the image."""
