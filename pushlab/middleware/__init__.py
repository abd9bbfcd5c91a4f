from pushlab.middleware.telemetry import TelemetryMiddleware

__all__ = ["TelemetryMiddleware"]
