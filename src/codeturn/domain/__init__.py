"""
codeturn — domain types

File: src/codeturn/domain/__init__.py

Purpose
- Conversation items and identifier helpers shared by every other package.
- Keep the domain layer free of IO side effects.
"""

from codeturn.domain.items import (
    ConversationItem,
    FunctionCallItem,
    FunctionCallOutputItem,
    ItemStatus,
    ItemType,
    LocalShellCallItem,
    LocalShellCallOutputItem,
    MessageItem,
    ReasoningItem,
    ToolCallItem,
    ToolOutputItem,
    is_tool_call,
    is_tool_output,
    item_from_dict,
    output_for_call,
    user_message,
)

__all__ = [
    "ConversationItem",
    "FunctionCallItem",
    "FunctionCallOutputItem",
    "ItemStatus",
    "ItemType",
    "LocalShellCallItem",
    "LocalShellCallOutputItem",
    "MessageItem",
    "ReasoningItem",
    "ToolCallItem",
    "ToolOutputItem",
    "is_tool_call",
    "is_tool_output",
    "item_from_dict",
    "output_for_call",
    "user_message",
]
