"""RuntimeMessage protocol: message models, emitter and history observer."""

from cadence.protocol.emitter import RunMeta, RuntimeEmitter
from cadence.protocol.history import RunHistory, RunRecord, load_ndjson
from cadence.protocol.messages import (
    MESSAGE_MODELS,
    RUNTIME_MESSAGE_TYPES,
    RuntimeMessage,
    RuntimeMessageBase,
    build_message,
    dispatch,
    dump_message,
    is_valid_message,
    parse_message,
    require_exhaustive,
)

__all__ = [
    "MESSAGE_MODELS",
    "RUNTIME_MESSAGE_TYPES",
    "RunHistory",
    "RunMeta",
    "RunRecord",
    "RuntimeEmitter",
    "RuntimeMessage",
    "RuntimeMessageBase",
    "build_message",
    "dispatch",
    "dump_message",
    "is_valid_message",
    "load_ndjson",
    "parse_message",
    "require_exhaustive",
]
