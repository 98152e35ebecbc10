"""Route guard driven by session changes.

Every session event is checked against the page being shown: signed-out
users on private pages go to sign-in (and nothing else runs), signed-in
users on the sign-in page go to the landing page, and otherwise the page's
single component initializer runs.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pitchroom.auth import AuthClient, UserSession

log = logging.getLogger(__name__)

SIGN_IN_PAGE = "signin"
LANDING_PAGE = "feed"
PUBLIC_PAGES = frozenset({"signin", "signup", "reset"})
PAGES = PUBLIC_PAGES | {"feed", "new", "settings", "chat"}

# page -> component to initialize once the guard passes
PAGE_COMPONENTS = {"feed": "directory", "chat": "conversations"}

Initializer = Callable[[UserSession | None], Awaitable[Any] | Any]


@dataclass(frozen=True)
class RouteDecision:
    page: str
    redirect: str | None = None
    initialize: str | None = None
    identity: str | None = None


def decide(session: UserSession | None, page: str) -> RouteDecision:
    if session is None and page not in PUBLIC_PAGES:
        return RouteDecision(page=page, redirect=SIGN_IN_PAGE)
    if session is not None and page == SIGN_IN_PAGE:
        return RouteDecision(page=page, redirect=LANDING_PAGE, identity=session.email)
    return RouteDecision(
        page=page,
        initialize=PAGE_COMPONENTS.get(page),
        identity=session.email if session else None,
    )


class SessionMonitor:
    def __init__(
        self,
        auth: AuthClient,
        page: str,
        navigate: Callable[[str], None],
        initializers: dict[str, Initializer] | None = None,
        show_identity: Callable[[str | None], None] | None = None,
    ):
        self.auth = auth
        self.page = page
        self._navigate = navigate
        self._initializers = initializers or {}
        self._show_identity = show_identity
        self._unsubscribe: Callable[[], None] | None = None
        self._pending: set[asyncio.Task] = set()
        self.last_decision: RouteDecision | None = None
        self.last_result: Any = None

    def start(self) -> None:
        """Follow the auth client's session stream until :meth:`stop`."""
        if self._unsubscribe is None:
            self._unsubscribe = self.auth.on_session_change(self._on_change)

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_change(self, session: UserSession | None) -> None:
        outcome = self._route(session)
        if inspect.isawaitable(outcome):
            task = asyncio.ensure_future(outcome)
            self._pending.add(task)
            task.add_done_callback(self._initializer_done)

    def _initializer_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        if task.exception() is not None:
            log.error("Initializing page %s failed", self.page, exc_info=task.exception())
        else:
            self.last_result = task.result()

    def _route(self, session: UserSession | None) -> Any:
        decision = decide(session, self.page)
        self.last_decision = decision
        if decision.redirect is not None:
            log.debug("Redirecting %s -> %s", self.page, decision.redirect)
            self._navigate(decision.redirect)
            return None
        if self._show_identity is not None:
            self._show_identity(decision.identity)
        init = self._initializers.get(decision.initialize) if decision.initialize else None
        if init is None:
            return None
        return init(session)

    async def handle(self, session: UserSession | None) -> RouteDecision:
        """Route one session value and wait for the page initializer to finish."""
        outcome = self._route(session)
        self.last_result = await outcome if inspect.isawaitable(outcome) else outcome
        return self.last_decision

    async def wait(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
