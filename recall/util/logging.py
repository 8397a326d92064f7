"""
Structured logging for store, index and ingestion operations.
"""

import logging
from typing import Any, Dict

from ..core.config import LOG_LEVEL


class StructuredLogger:
    """Structured logger for record, index and import operations."""

    def __init__(self, name: str = "recall", level: str = None):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level or LOG_LEVEL)

        # Handlers are shared per logger name; attach ours only once
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None):
        """Emit "Operation: <op>, Status: <status>[, Details: {...}]"; failures log as warnings."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        if status in ("failed", "rejected"):
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_record_operation(self, operation: str, record_id: str, input_text: str = None, status: str = "success"):
        """Log a record-level operation."""
        details = {"id": record_id}
        if input_text is not None:
            details["input"] = input_text[:50] + "..." if len(input_text) > 50 else input_text

        self.log_operation(f"record.{operation}", status, details)

    def log_index_operation(self, operation: str, details: Dict[str, Any] = None, status: str = "success"):
        """Log a vector index operation."""
        self.log_operation(f"index.{operation}", status, details)

    def log_import_batch(self, source: str, batch_number: int, batch_size: int, total_batches: int = None,
                         skipped: int = 0):
        """Log progress of a streaming import."""
        details = {"source": source, "batch": batch_number, "items": batch_size}
        if total_batches is not None:
            details["of"] = total_batches
        if skipped:
            details["skipped"] = skipped

        self.log_operation("import.batch", "success", details)

    # Plain messages; extra args are formatted lazily by logging
    def info(self, message: str, *args) -> None:
        self.logger.info(message, *args)

    def warning(self, message: str, *args) -> None:
        self.logger.warning(message, *args)

    def error(self, message: str, *args) -> None:
        self.logger.error(message, *args)

    def debug(self, message: str, *args) -> None:
        self.logger.debug(message, *args)


logger = StructuredLogger()
