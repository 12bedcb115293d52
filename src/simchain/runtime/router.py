# src/simchain/runtime/router.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from simchain.runtime.errors import ConfigurationError, RoutingError
from simchain.runtime.types import Context

Json = Dict[str, Any]

MsgHandler = Callable[[Context, Json], Optional[Json]]
QueryHandler = Callable[[Context, Json], Json]


@dataclass(frozen=True)
class Route:
    module: str
    name: str
    handler: Callable[..., Any]

    @property
    def path(self) -> str:
        return f"{self.module}/{self.name}"


class ServiceRouter:
    """Registry of the message and query handlers modules publish.

    Message types are global names ("bank/MsgSend"); query paths are scoped
    by module ("bank/balance"). Transport (HTTP, gRPC) lives elsewhere and
    only dispatches through route_msg()/query().
    """

    def __init__(self) -> None:
        self._msgs: Dict[str, Route] = {}
        self._queries: Dict[str, Route] = {}

    def add_msg_handler(self, module: str, msg_name: str, handler: MsgHandler) -> str:
        route = Route(module=str(module), name=str(msg_name), handler=handler)
        if route.path in self._msgs:
            raise ConfigurationError("duplicate_route", "msg_handler_already_registered", {"msg_type": route.path})
        self._msgs[route.path] = route
        return route.path

    def add_query_handler(self, module: str, path: str, handler: QueryHandler) -> str:
        route = Route(module=str(module), name=str(path).strip("/"), handler=handler)
        if route.path in self._queries:
            raise ConfigurationError("duplicate_route", "query_handler_already_registered", {"path": route.path})
        self._queries[route.path] = route
        return route.path

    def msg_types(self) -> Tuple[str, ...]:
        return tuple(self._msgs.keys())

    def query_paths(self) -> Tuple[str, ...]:
        return tuple(self._queries.keys())

    def modules(self) -> Tuple[str, ...]:
        seen: Dict[str, None] = {}
        for r in list(self._msgs.values()) + list(self._queries.values()):
            seen.setdefault(r.module, None)
        return tuple(seen.keys())

    def route_msg(self, ctx: Context, msg_type: str, payload: Json) -> Json:
        route = self._msgs.get(str(msg_type))
        if route is None:
            raise RoutingError("unknown_route", "msg_type_not_registered", {"msg_type": msg_type})
        out = route.handler(ctx, dict(payload or {}))
        return out if isinstance(out, dict) else {}

    def query(self, ctx: Context, path: str, params: Optional[Json] = None) -> Json:
        route = self._queries.get(str(path).strip("/"))
        if route is None:
            raise RoutingError("unknown_route", "query_path_not_registered", {"path": path})
        return route.handler(ctx, dict(params or {}))
