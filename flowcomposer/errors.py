# flowcomposer/errors.py


class FlowComposerError(Exception):
    pass


class FlowNotFound(FlowComposerError, KeyError):
    pass


class UnknownProviderError(FlowComposerError):
    def __init__(self, provider: str):
        super().__init__(f"no runner registered for provider {provider!r}")
        self.provider = provider


class AuthorizationDenied(FlowComposerError):
    """Raised by an authorization hook to refuse a single model call."""
