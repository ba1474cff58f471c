"""Exceptions raised by the route pipeline."""


class RoutecastError(Exception):
    pass


class ValidationError(RoutecastError):
    """Caller-supplied input is invalid (empty document, bad interval or speed)."""


class ParseError(RoutecastError):
    """No route could be recovered from the document after every fallback."""


class ProcessingLimitWarning(UserWarning):
    """A point ceiling was hit; processing continued with reduced fidelity."""
