from typing import Optional


class ConfigError(Exception):
    pass


class RuleLoadError(ConfigError):
    def __init__(self, path: str, message: str):
        super().__init__(f"failed to load rules file {path}: {message}")
        self.path = path


class RuleValidationError(ConfigError, ValueError):
    def __init__(self, position: int, name: str, message: str):
        label = f"rule #{position}" + (f" ({name})" if name else "")
        super().__init__(f"{label}: {message}")
        self.position = position
        self.name = name


class UnsupportedStrategyError(ConfigError):
    def __init__(self, strategy: str):
        super().__init__(f"unsupported load balancing strategy: {strategy}")
        self.strategy = strategy


class RuleNotFoundError(KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"rule {self.name} does not exist"


class RuleEngineStoppedError(RuntimeError):
    def __init__(self):
        super().__init__("rule engine has been stopped")


class ForwardError(Exception):
    """Raised when the upstream request could not be completed."""

    def __init__(self, target_url: str, cause: Optional[BaseException] = None):
        super().__init__(f"forwarding to {target_url} failed: {cause}")
        self.target_url = target_url
        self.cause = cause
