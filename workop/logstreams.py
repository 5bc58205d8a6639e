"""Emit all log records as single line JSON documents.

Log calls throughout the code base attach structured context as the one and
only positional argument, eg

    logit.info("status written", {"key": "default/web", "version": 3})

The formatter merges that dictionary into the JSON document instead of
interpolating it into the message.
"""

import json
import logging
import sys
from datetime import UTC, datetime

# Convenience.
logit = logging.getLogger("app")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
        }

        # Structured context in the form of a single dict argument.
        if isinstance(record.args, dict):
            doc["msg"] = str(record.msg)
            doc.update({k: v for k, v in record.args.items() if k not in doc})
        else:
            doc["msg"] = record.getMessage()

        if record.exc_info:
            doc["exception"] = self.formatException(record.exc_info)
        return json.dumps(doc, default=str)


def setup(level: str) -> None:
    """Route all log records to stdout as JSON with the desired `level`."""
    level = level.upper()
    if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        print(f"Unknown log level <{level}> - falling back to INFO")
        level = "INFO"

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

    root = logging.getLogger()
    for old in list(root.handlers):
        root.removeHandler(old)
    root.addHandler(handler)
    root.setLevel(level)

    # Silence the chatty HTTP client libraries unless we are debugging.
    for name in ("httpx", "httpcore"):
        logging.getLogger(name).setLevel("DEBUG" if level == "DEBUG" else "WARNING")
