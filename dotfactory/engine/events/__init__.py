"""Engine events package — public re-exports.

    from dotfactory.engine.events import (
        PipelineEvent, EventBuilder, EventEmitter,
        CompositeEmitter, NullEmitter, build_emitter,
    )
"""
from __future__ import annotations

from dotfactory.engine.events.types import (
    ALL_EVENT_TYPES,
    EventBuilder,
    EventType,
    PipelineEvent,
)
from dotfactory.engine.events.emitter import (
    EVENTS_FILENAME,
    CallbackEmitter,
    CompositeEmitter,
    EventBusConfig,
    EventEmitter,
    NullEmitter,
    build_emitter,
)
from dotfactory.engine.events.jsonl_backend import JSONLEmitter

__all__ = [
    # types
    "ALL_EVENT_TYPES",
    "PipelineEvent",
    "EventType",
    "EventBuilder",
    # emitter
    "EVENTS_FILENAME",
    "EventEmitter",
    "CallbackEmitter",
    "CompositeEmitter",
    "NullEmitter",
    "EventBusConfig",
    "JSONLEmitter",
    "build_emitter",
]
