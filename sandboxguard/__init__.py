"""Security monitoring and telemetry collection services for code-execution sandboxes."""

__version__ = "0.1.0"