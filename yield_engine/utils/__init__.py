from .logging import RunMetricsEmitter, StructuredFormatter, get_logger

__all__ = ["RunMetricsEmitter", "StructuredFormatter", "get_logger"]
