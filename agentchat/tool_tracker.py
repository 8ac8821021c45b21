"""Parent/child bookkeeping for tool invocations.

The runtime addresses tool activity three different ways: argument deltas by
stream index, results by tool id, and sub-conversation activity by a parent
tool id. ``ToolCallTracker`` keeps the maps that translate between them and
routes each update to the record that owns it.

Stream indices restart in every assistant message and every sub-conversation
has its own numbering, so index bindings are scoped by the parent tool id
(``None`` for the top level) and released when the block stops.
"""

import json
import logging
from typing import Any, Dict, Optional, Tuple, Union

from .message_log import MessageLog, SubagentCall, ToolRecord

logger = logging.getLogger(__name__)

PLACEHOLDER_TOOL_NAME = "Tool"

_Scope = Optional[str]
_IndexKey = Tuple[_Scope, int]


class ToolCallTracker:
    """Routes tool updates to the ToolRecord or SubagentCall they belong to."""

    def __init__(self, log: MessageLog):
        self._log = log
        self._stream_index_to_tool: Dict[_IndexKey, str] = {}
        self._result_index_to_tool: Dict[_IndexKey, str] = {}
        self._child_to_parent: Dict[str, str] = {}

    # =========================================================================
    # Stream index bindings
    # =========================================================================

    def bind_stream_index(self, index: int, tool_id: str, scope: _Scope = None) -> None:
        key = (scope, index)
        previous = self._stream_index_to_tool.get(key)
        if previous is not None and previous != tool_id:
            logger.debug(f"Stream index {index} rebound from {previous} to {tool_id}")
        self._stream_index_to_tool[key] = tool_id

    def tool_for_index(self, index: Optional[int], scope: _Scope = None) -> Optional[str]:
        if index is None:
            return None
        return self._stream_index_to_tool.get((scope, index))

    def release_stream_index(self, index: Optional[int], scope: _Scope = None) -> Optional[str]:
        if index is None:
            return None
        return self._stream_index_to_tool.pop((scope, index), None)

    def bind_result_index(self, index: int, tool_id: str, scope: _Scope = None) -> None:
        self._result_index_to_tool[(scope, index)] = tool_id

    def pop_result_index(self, index: Optional[int], scope: _Scope = None) -> Optional[str]:
        if index is None:
            return None
        return self._result_index_to_tool.pop((scope, index), None)

    def reset_stream_indices(self) -> None:
        """Forget index bindings; called whenever a new driving loop starts."""
        self._stream_index_to_tool.clear()
        self._result_index_to_tool.clear()

    # =========================================================================
    # Parent/child relationships
    # =========================================================================

    def parent_of(self, child_id: Optional[str]) -> Optional[str]:
        if not child_id:
            return None
        return self._child_to_parent.get(child_id)

    def find_subagent_call(self, child_id: Optional[str]) -> Optional[SubagentCall]:
        parent_id = self.parent_of(child_id)
        if parent_id is None:
            return None
        parent = self._log.find_tool(parent_id)
        if parent is None:
            return None
        return parent.find_subagent_call(child_id)

    def resolve(self, tool_id: Optional[str]) -> Optional[Union[ToolRecord, SubagentCall]]:
        """Find the record for ``tool_id``; child mappings take precedence."""
        if not tool_id:
            return None
        call = self.find_subagent_call(tool_id)
        if call is not None:
            return call
        return self._log.find_tool(tool_id)

    def open_subagent_call(
        self,
        parent_id: str,
        child_id: str,
        name: str,
        tool_input: Optional[Dict[str, Any]] = None,
        input_json: str = "",
    ) -> Optional[SubagentCall]:
        """Record a child invocation under its parent tool.

        An existing call for the same id (typically a placeholder) is
        backfilled with the real name and input rather than duplicated.

        Returns:
            The subagent call, or None if the parent tool is unknown.
        """
        parent = self._log.find_tool(parent_id)
        if parent is None:
            logger.debug(f"Subagent tool {child_id} references unknown parent {parent_id}")
            return None

        self._child_to_parent[child_id] = parent_id
        existing = parent.find_subagent_call(child_id)
        if existing is not None:
            if existing.name == PLACEHOLDER_TOOL_NAME:
                existing.input_json = input_json
            existing.name = name
            existing.input = tool_input or {}
            return existing

        call = SubagentCall(
            id=child_id,
            name=name,
            input=tool_input or {},
            input_json=input_json,
            is_loading=True,
        )
        parent.subagent_calls.append(call)
        return call

    def ensure_placeholder(self, parent_id: str, child_id: str) -> Optional[SubagentCall]:
        """Make sure a child id has a call under ``parent_id`` before its result lands."""
        existing = self.find_subagent_call(child_id)
        if existing is not None:
            return existing
        parent = self._log.find_tool(parent_id)
        if parent is None:
            logger.debug(f"Dropping result for {child_id}: parent {parent_id} unknown")
            return None

        self._child_to_parent[child_id] = parent_id
        call = parent.find_subagent_call(child_id)
        if call is None:
            call = SubagentCall(
                id=child_id,
                name=PLACEHOLDER_TOOL_NAME,
                input={},
                input_json=json.dumps({}),
                is_loading=True,
            )
            parent.subagent_calls.append(call)
        return call

    # =========================================================================
    # Update routing
    # =========================================================================

    def append_input(self, tool_id: Optional[str], delta: str, parent_id: _Scope = None) -> bool:
        record = self._input_target(tool_id, parent_id)
        if record is None:
            logger.debug(f"Dropping argument delta for unknown tool {tool_id}")
            return False
        record.append_input(delta)
        return True

    def finalize_input(self, tool_id: Optional[str], parent_id: _Scope = None) -> bool:
        record = self._input_target(tool_id, parent_id)
        if record is None:
            return False
        record.finalize_input()
        return True

    def _input_target(
        self, tool_id: Optional[str], parent_id: _Scope
    ) -> Optional[Union[ToolRecord, SubagentCall]]:
        if not tool_id:
            return None
        if parent_id is not None:
            parent = self._log.find_tool(parent_id)
            if parent is None:
                return None
            return parent.find_subagent_call(tool_id)
        return self._log.find_tool(tool_id)

    def start_result(self, tool_id: str, content: str, is_error: Optional[bool] = None) -> bool:
        call = self.find_subagent_call(tool_id)
        if call is not None:
            call.start_result(content, is_error)
            call.is_loading = True
            return True
        record = self._log.find_tool(tool_id)
        if record is None:
            logger.debug(f"Dropping result start for unknown tool {tool_id}")
            return False
        record.start_result(content, is_error)
        return True

    def append_result(self, tool_id: str, delta: str) -> bool:
        call = self.find_subagent_call(tool_id)
        if call is not None:
            call.append_result(delta)
            call.is_loading = True
            return True
        record = self._log.find_tool(tool_id)
        if record is None:
            logger.debug(f"Dropping result delta for unknown tool {tool_id}")
            return False
        record.append_result(delta)
        return True

    def complete_result(
        self, tool_id: str, content: Optional[str], is_error: Optional[bool] = None
    ) -> bool:
        record = self.resolve(tool_id)
        if record is None:
            logger.debug(f"Dropping result for unknown tool {tool_id}")
            return False
        record.complete_result(content, is_error)
        return True

    def finish_subagent_result(self, child_id: str) -> Optional[SubagentCall]:
        """Clear the loading flag of a child call whose result block stopped."""
        call = self.find_subagent_call(child_id)
        if call is not None:
            call.is_loading = False
        return call
