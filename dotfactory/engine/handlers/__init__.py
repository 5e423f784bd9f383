"""Node handlers for the pipeline engine.

Public API::

    from dotfactory.engine.handlers import Handler, HandlerRequest, HandlerRegistry
"""
from dotfactory.engine.handlers.base import Handler, HandlerRequest
from dotfactory.engine.handlers.custom import FunctionHandler
from dotfactory.engine.handlers.registry import HandlerRegistry

__all__ = ["FunctionHandler", "Handler", "HandlerRequest", "HandlerRegistry"]
