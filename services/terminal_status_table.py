"""
Log contract: instruction-name markers to terminal transfer status

A destroyed transfer account cannot be re-read, so the reconciler infers the
outcome from the operation's log lines. Every string this depends on lives in
this module. LOG_CONTRACT_VERSION changes whenever the program's log format or
instruction names change.

Contract v1 (Anchor):
    Program <program_id> invoke [1]
    Program log: Instruction: <PascalCaseName>
    ...
    Program <program_id> success
Only markers emitted while the handshake program is executing at depth 1 are
counted; nested invocations (token-program CPIs also log "Instruction: ...")
are ignored.
"""

import logging
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

from models import TransferStatus

logger = logging.getLogger(__name__)

LOG_CONTRACT_VERSION = 1

TERMINAL_STATUS_BY_INSTRUCTION: Dict[str, TransferStatus] = {
    "ClaimTransfer": TransferStatus.CLAIMED,
    "CancelTransfer": TransferStatus.CANCELLED,
    "RejectTransfer": TransferStatus.REJECTED,
    "DeclineTransfer": TransferStatus.DECLINED,
    "ExpireTransfer": TransferStatus.EXPIRED,
}

NON_TERMINAL_INSTRUCTIONS = frozenset({"CreateTransfer"})

_INVOKE_RE = re.compile(r"^Program (\S+) invoke \[(\d+)\]$")
_EXIT_RE = re.compile(r"^Program (\S+) (success|failed.*)$")
_MARKER_RE = re.compile(r"^Program log: Instruction: (\w+)$")


@dataclass(frozen=True)
class InstructionMarker:
    """One top-level handshake instruction as seen in the logs"""
    position: int
    name: str

    @property
    def terminal_status(self) -> Optional[TransferStatus]:
        return terminal_status_for(self.name)


def terminal_status_for(instruction_name: str) -> Optional[TransferStatus]:
    """Map an instruction name to the terminal status it produces, if any"""
    return TERMINAL_STATUS_BY_INSTRUCTION.get(instruction_name)


def parse_instruction_markers(log_messages: Iterable[str], program_id: str) -> List[InstructionMarker]:
    """Top-level instruction markers emitted by program_id, in execution order"""
    markers: List[InstructionMarker] = []
    call_stack: List[str] = []
    awaiting_marker = False

    for line in log_messages or ():
        invoke = _INVOKE_RE.match(line)
        if invoke:
            call_stack.append(invoke.group(1))
            awaiting_marker = invoke.group(1) == program_id and invoke.group(2) == "1"
            continue

        exit_match = _EXIT_RE.match(line)
        if exit_match:
            if call_stack and call_stack[-1] == exit_match.group(1):
                call_stack.pop()
            awaiting_marker = False
            continue

        marker = _MARKER_RE.match(line)
        if marker and awaiting_marker and len(call_stack) == 1 and call_stack[0] == program_id:
            name = marker.group(1)
            markers.append(InstructionMarker(position=len(markers), name=name))
            awaiting_marker = False
            if name not in TERMINAL_STATUS_BY_INSTRUCTION and name not in NON_TERMINAL_INSTRUCTIONS:
                logger.debug(f"RECONCILE_MARKER_IGNORED: {name} is not part of log contract v{LOG_CONTRACT_VERSION}")

    return markers


def terminal_statuses_in(markers: Iterable[InstructionMarker]) -> Set[TransferStatus]:
    return {m.terminal_status for m in markers if m.terminal_status is not None}
