"""Model input assembly."""

from chatledger.context.builder import BuiltContext, ModelContextBuilder

__all__ = ["BuiltContext", "ModelContextBuilder"]
