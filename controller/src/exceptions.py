"""
Controller error types.
"""

class PipelineConfigError(Exception):
    """Raised when pipeline configuration is invalid."""
    pass

class UnknownDependencyError(PipelineConfigError):
    """Raised when depends_on names a pipeline that is not defined."""

    def __init__(self, pipeline: str, dependency: str):
        self.pipeline = pipeline
        self.dependency = dependency
        super().__init__(
            f"Pipeline '{pipeline}' depends on unknown pipeline '{dependency}'"
        )

class CyclicDependencyError(PipelineConfigError):
    """Raised when pipeline dependencies form a cycle."""

    def __init__(self, cycle):
        self.cycle = list(cycle)
        super().__init__(
            "Circular dependency detected: " + " -> ".join(self.cycle)
        )

class SecretResolutionError(Exception):
    """Raised when a secret reference cannot be resolved."""

    def __init__(self, name: str, reason: str = "not found"):
        self.name = name
        super().__init__(f"Failed to resolve secret '{name}': {reason}")

class ExternalServiceError(Exception):
    """Raised when the cluster API or a notification endpoint is unavailable."""
    pass
