# src/simchain/runtime/types.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

Json = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class ValidatorUpdate:
    """Consensus participant change. power == 0 removes the participant."""

    pubkey: str
    power: int

    def to_json(self) -> Json:
        return {"pubkey": self.pubkey, "power": int(self.power)}


@dataclass(frozen=True, slots=True)
class Event:
    type: str
    attributes: Tuple[Tuple[str, str], ...] = ()
    module: str = ""

    @staticmethod
    def new(type: str, **attributes: Any) -> "Event":
        attrs = tuple(sorted((str(k), str(v)) for k, v in attributes.items()))
        return Event(type=str(type), attributes=attrs)

    def with_module(self, module: str) -> "Event":
        return Event(type=self.type, attributes=self.attributes, module=str(module))

    def attr(self, key: str, default: Optional[str] = None) -> Optional[str]:
        for k, v in self.attributes:
            if k == key:
                return v
        return default

    def to_json(self) -> Json:
        return {"type": self.type, "module": self.module, "attributes": dict(self.attributes)}


@dataclass
class Context:
    """Per-call execution context handed to every module handler.

    Carries the step identity and an event sink. Storage is never reached
    through the context; modules use their keepers.
    """

    chain_id: str
    height: int = 0
    time_ms: int = 0
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("simchain.module"))
    events: List[Event] = field(default_factory=list)

    def emit(self, event: Event) -> None:
        self.events.append(event)

    def drain_events(self) -> List[Event]:
        out = list(self.events)
        self.events.clear()
        return out


@dataclass(frozen=True)
class BeginRequest:
    height: int
    time_ms: int = 0
    proposer: str = ""
    metadata: Json = field(default_factory=dict)


@dataclass(frozen=True)
class EndRequest:
    height: int
    metadata: Json = field(default_factory=dict)


@dataclass(frozen=True)
class PhaseResult:
    """What a single module hands back from a begin/end handler."""

    events: Tuple[Event, ...] = ()
    validator_updates: Tuple[ValidatorUpdate, ...] = ()


@dataclass(frozen=True)
class BeginResponse:
    events: Tuple[Event, ...] = ()


@dataclass(frozen=True)
class EndResponse:
    events: Tuple[Event, ...] = ()
    validator_updates: Tuple[ValidatorUpdate, ...] = ()


@dataclass(frozen=True)
class InitGenesisResponse:
    validator_updates: Tuple[ValidatorUpdate, ...] = ()


@dataclass(frozen=True)
class InitChainRequest:
    chain_id: str
    app_state_bytes: bytes
    time_ms: int = 0
    initial_height: int = 1


@dataclass(frozen=True)
class CommitInfo:
    height: int
    app_hash: str
