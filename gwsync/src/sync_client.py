"""
Gateway sync client: push a payload, wait out the reboot, verify.

Each call to :meth:`GatewaySyncClient.sync` runs one :class:`SyncSession`
through the state machine::

    Idle -> Pushing -> AwaitingReboot -> Verifying -> Succeeded
              |              |               |
              +--------------+---------------+----> Failed

Pushing sends the model-specific push steps over the gateway's HTTP/CGI
interface with Basic auth and a per-request timeout. Transport errors and
5xx responses are retried with exponential backoff
(``push_backoff_s * 2**n``) up to ``push_max_attempts``; 4xx responses and
firmware error codes are final. A push refused at its first step means the
gateway kept its previous configuration; one refused after an earlier step
was accepted fails with :class:`~gwsync.src.errors.PartialPush` and leaves
the gateway in an unknown state.

An accepted push is the reboot trigger; no separate reboot command is sent.
After ``settle_delay_s`` the client polls the readback endpoint every
``verify_poll_interval_s`` until the fingerprint of the artefact read back
matches the one pushed. If that never happens within ``verify_timeout_s``
(measured from the accepted push), or the caller sets the ``cancel`` event,
the session fails and the gateway is recorded as being in an unknown state.
Further syncs against it raise :class:`~gwsync.src.errors.UnknownDeviceState`
until :meth:`GatewaySyncClient.mark_rediscovered` is called for it.

Sessions against the same gateway are serialised through per-gateway
``asyncio.Lock`` objects keyed by both its identifier and its IP, so a
discovered record and a manually entered one for the same address never
interleave their pushes. Sessions against different gateways run
concurrently.

CHANGELOG:
- 2026-10-19: Initial creation (STORY-111)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from gwsync.src import firmware
from gwsync.src.errors import (
    PartialPush,
    PushRejected,
    SyncCancelled,
    SyncError,
    UnknownDeviceState,
    VerificationTimeout,
)
from gwsync.src.generator import GatewayPayload, canonical_json
from gwsync.src.models import GatewayModel, GatewayRecord, Reachability, SyncState

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_S = 3.0
DEFAULT_PUSH_MAX_ATTEMPTS = 3
DEFAULT_PUSH_BACKOFF_S = 1.0
DEFAULT_SETTLE_DELAY_S = 30.0
DEFAULT_VERIFY_TIMEOUT_S = 180.0
DEFAULT_VERIFY_POLL_INTERVAL_S = 2.0

_OCTET_STREAM = "application/octet-stream"


# ---------------------------------------------------------------------------
# Per-model push and readback profiles
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PushStep:
    """One HTTP request of a push.

    Attributes:
        name: Short label used in logs and errors.
        path: Request path on the gateway.
        params: Query parameters (GET steps).
        upload: ``(field, filename, content)`` for multipart POST steps.
    """

    name: str
    path: str
    params: dict[str, str] | None = None
    upload: tuple[str, str, bytes] | None = None


@dataclass(frozen=True, slots=True)
class Readback:
    """Where and how to read the applied configuration back.

    Attributes:
        path: Request path of the status/readback endpoint.
        params: Query parameters.
        expected: Fingerprint the readback must match.
        fingerprint: Computes the fingerprint of a readback response.
    """

    path: str
    params: dict[str, str] | None
    expected: str
    fingerprint: Callable[[httpx.Response], str]


def _n510_readback_fingerprint(response: httpx.Response) -> str:
    return firmware.artefact_fingerprint(firmware.n510_edge_projection(response.json()))


def _n720_readback_fingerprint(response: httpx.Response) -> str:
    return firmware.artefact_fingerprint(firmware.decode_edge_report(response.content))


def push_plan(payload: GatewayPayload) -> tuple[list[PushStep], Readback]:
    """Push steps and readback for the payload's gateway model."""
    if payload.model is GatewayModel.N510:
        edge = firmware.render_n510_edge(payload)
        steps = [
            PushStep("mqtt", "/mqttbase.cgi", params=firmware.n510_mqtt_params(payload)),
            PushStep(
                "edge",
                "/edge_model",
                # the firmware silently discards uploads not named "blob"
                upload=("file", "blob", canonical_json(edge)),
            ),
        ]
        readback = Readback(
            path="/edge.json",
            params=None,
            expected=firmware.artefact_fingerprint(firmware.n510_edge_projection(edge)),
            fingerprint=_n510_readback_fingerprint,
        )
        return steps, readback

    report = firmware.render_n720_edge_report(payload)
    steps = [
        PushStep("mqtt", "/update_nv.cgi", params=firmware.n720_mqtt_params(payload)),
        PushStep(
            "edge",
            "/upload/edge",
            upload=("c", "conf", firmware.render_n720_edge_csv(payload).encode("utf-8")),
        ),
        PushStep(
            "edge_report",
            "/upload/nv1",
            upload=("c", "edge_report", firmware.encode_edge_report(report)),
        ),
    ]
    readback = Readback(
        path="/download_nv.cgi",
        params={"name": "edge_report"},
        expected=firmware.artefact_fingerprint(report),
        fingerprint=_n720_readback_fingerprint,
    )
    return steps, readback


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class SyncSession:
    """One sync attempt against one gateway.

    The session captures the payload it was created with; later edits to the
    caller's Configuration never reach it.

    Attributes:
        gateway: Target gateway. Updated to ``reachable`` once a push lands.
        payload: The payload being applied.
        started_at: Session creation time.
        state: Current state.
        last_error: Terminal error of a failed session.
        transitions: ``(state, time)`` history, starting with Idle.
        push_attempts: HTTP requests made while pushing, retries included.
        accepted_steps: Names of the push steps the gateway accepted.
        finished_at: Time the session reached a terminal state.
    """

    gateway: GatewayRecord
    payload: GatewayPayload
    started_at: datetime
    state: SyncState = SyncState.IDLE
    last_error: SyncError | None = None
    transitions: list[tuple[SyncState, datetime]] = field(default_factory=list)
    push_attempts: int = 0
    accepted_steps: list[str] = field(default_factory=list)
    finished_at: datetime | None = None

    def __post_init__(self) -> None:
        if not self.transitions:
            self.transitions.append((self.state, self.started_at))

    @property
    def succeeded(self) -> bool:
        return self.state is SyncState.SUCCEEDED

    @property
    def visited(self) -> list[SyncState]:
        """States in the order they were entered."""
        return [state for state, _ in self.transitions]

    @property
    def device_state_known(self) -> bool:
        """``False`` when the gateway must be re-discovered before retrying."""
        return self.last_error is None or self.last_error.device_state_known

    @property
    def requires_rediscovery(self) -> bool:
        return not self.device_state_known

    def advance(self, state: SyncState, at: datetime) -> None:
        logger.info(
            "Sync %s: %s -> %s",
            self.gateway.identifier,
            self.state.value,
            state.value,
            extra={"gateway": self.gateway.identifier, "sync_state": state.value},
        )
        self.state = state
        self.transitions.append((state, at))
        if state in (SyncState.SUCCEEDED, SyncState.FAILED):
            self.finished_at = at


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class _RetryablePushError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class GatewaySyncClient:
    """Applies payloads to gateways and confirms they took effect.

    Args:
        username: Gateway web interface user.
        password: Gateway web interface password.
        http_timeout_s: Per-request timeout.
        push_max_attempts: Attempts per push step.
        push_backoff_s: Initial retry delay; doubles per retry.
        settle_delay_s: Wait after an accepted push before polling.
        verify_timeout_s: Verification budget from the accepted push.
        verify_poll_interval_s: Delay between readback polls.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        clock: Monotonic seconds, used for deadlines.
        sleep: Coroutine used for backoff and polling delays.
        now: Wall clock for session timestamps.
    """

    def __init__(
        self,
        *,
        username: str = "admin",
        password: str = "admin",
        http_timeout_s: float = DEFAULT_HTTP_TIMEOUT_S,
        push_max_attempts: int = DEFAULT_PUSH_MAX_ATTEMPTS,
        push_backoff_s: float = DEFAULT_PUSH_BACKOFF_S,
        settle_delay_s: float = DEFAULT_SETTLE_DELAY_S,
        verify_timeout_s: float = DEFAULT_VERIFY_TIMEOUT_S,
        verify_poll_interval_s: float = DEFAULT_VERIFY_POLL_INTERVAL_S,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        now: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._auth = (username, password)
        self._http_timeout_s = http_timeout_s
        self._push_max_attempts = push_max_attempts
        self._push_backoff_s = push_backoff_s
        self._settle_delay_s = settle_delay_s
        self._verify_timeout_s = verify_timeout_s
        self._verify_poll_interval_s = verify_poll_interval_s
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._now = now
        self._locks: dict[str, asyncio.Lock] = {}
        self._unknown_state: set[str] = set()

    # ------------------------------------------------------------------
    # Unknown-state bookkeeping
    # ------------------------------------------------------------------

    def is_state_unknown(self, gateway: GatewayRecord) -> bool:
        return bool({gateway.identifier, gateway.ip} & self._unknown_state)

    def mark_rediscovered(self, gateways: Iterable[GatewayRecord]) -> None:
        """Clear the unknown-state flag of gateways seen by a fresh scan."""
        for gateway in gateways:
            for key in (gateway.mac, gateway.ip):
                if key and key in self._unknown_state:
                    self._unknown_state.discard(key)
                    logger.info("Gateway %s re-discovered; sync allowed again", key)

    def _mark_unknown(self, gateway: GatewayRecord) -> None:
        self._unknown_state.update({gateway.identifier, gateway.ip})

    @contextlib.asynccontextmanager
    async def _serialised(self, gateway: GatewayRecord) -> AsyncIterator[None]:
        # sorted acquisition order keeps two records of one gateway deadlock-free
        async with contextlib.AsyncExitStack() as stack:
            for key in sorted({gateway.identifier, gateway.ip}):
                await stack.enter_async_context(self._locks.setdefault(key, asyncio.Lock()))
            yield

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def sync(
        self,
        gateway: GatewayRecord,
        payload: GatewayPayload,
        cancel: asyncio.Event | None = None,
    ) -> SyncSession:
        """Run one sync session to a terminal state.

        Args:
            gateway: Target gateway.
            payload: Compiled payload for *gateway*.
            cancel: Optional event; setting it while awaiting the reboot or
                verifying stops local polling.

        Returns:
            The finished session. Push and verification failures are
            reported through ``session.last_error``, not raised.

        Raises:
            UnknownDeviceState: A previous session left *gateway* in an
                unknown state and it has not been re-discovered since.
        """
        async with self._serialised(gateway):
            if self.is_state_unknown(gateway):
                raise UnknownDeviceState(
                    f"Gateway {gateway.identifier} is in an unknown state after a previous "
                    "sync; re-discover it before syncing again"
                )

            session = SyncSession(gateway=gateway, payload=payload, started_at=self._now())
            steps, readback = push_plan(payload)

            async with httpx.AsyncClient(
                base_url=f"http://{gateway.ip}",
                auth=self._auth,
                timeout=self._http_timeout_s,
                transport=self._transport,
            ) as client:
                session.advance(SyncState.PUSHING, self._now())
                try:
                    for step in steps:
                        await self._push_step(client, session, step)
                        session.accepted_steps.append(step.name)
                except PushRejected as exc:
                    if not session.accepted_steps:
                        return self._fail(session, exc)
                    self._mark_unknown(session.gateway)
                    partial = PartialPush(
                        f"{exc}; already accepted: {', '.join(session.accepted_steps)}; "
                        "the gateway holds a partial configuration, re-discover it",
                        accepted_steps=tuple(session.accepted_steps),
                        status_code=exc.status_code,
                    )
                    partial.__cause__ = exc
                    return self._fail(session, partial)

                accepted_at = self._clock()
                session.gateway = gateway.model_copy(
                    update={"reachability": Reachability.REACHABLE, "last_seen": self._now()}
                )
                session.advance(SyncState.AWAITING_REBOOT, self._now())

                if await self._pause(self._settle_delay_s, cancel):
                    return self._cancelled(session)

                session.advance(SyncState.VERIFYING, self._now())
                return await self._verify(client, session, readback, accepted_at, cancel)

    # ------------------------------------------------------------------
    # Pushing
    # ------------------------------------------------------------------

    async def _push_step(
        self, client: httpx.AsyncClient, session: SyncSession, step: PushStep
    ) -> None:
        for attempt in range(1, self._push_max_attempts + 1):
            session.push_attempts += 1
            try:
                await self._send(client, step)
                logger.debug("Push step '%s' accepted on attempt %d", step.name, attempt)
                return
            except _RetryablePushError as exc:
                if attempt == self._push_max_attempts:
                    raise PushRejected(
                        f"Push step '{step.name}' to {session.gateway.ip} failed after "
                        f"{attempt} attempts: {exc}",
                        status_code=exc.status_code,
                    ) from exc
                delay = self._push_backoff_s * 2 ** (attempt - 1)
                logger.warning(
                    "Push step '%s' attempt %d/%d failed (%s); retrying in %.1fs",
                    step.name,
                    attempt,
                    self._push_max_attempts,
                    exc,
                    delay,
                )
                await self._sleep(delay)

    async def _send(self, client: httpx.AsyncClient, step: PushStep) -> None:
        try:
            if step.upload is not None:
                field_name, filename, content = step.upload
                response = await client.post(
                    step.path, files={field_name: (filename, content, _OCTET_STREAM)}
                )
            else:
                response = await client.get(step.path, params=step.params)
        except httpx.TransportError as exc:
            raise _RetryablePushError(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 500:
            raise _RetryablePushError(f"HTTP {response.status_code}", response.status_code)
        if response.status_code >= 400:
            reason = "bad credentials" if response.status_code in (401, 403) else "rejected"
            raise PushRejected(
                f"Push step '{step.name}' {reason} (HTTP {response.status_code})",
                status_code=response.status_code,
            )

        error_code = _firmware_error_code(response)
        if error_code:
            raise PushRejected(
                f"Push step '{step.name}' rejected by firmware (err={error_code})",
                status_code=response.status_code,
            )

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    async def _verify(
        self,
        client: httpx.AsyncClient,
        session: SyncSession,
        readback: Readback,
        accepted_at: float,
        cancel: asyncio.Event | None,
    ) -> SyncSession:
        deadline = accepted_at + self._verify_timeout_s
        polls = 0
        while True:
            if cancel is not None and cancel.is_set():
                return self._cancelled(session)

            polls += 1
            observed = await self._read_fingerprint(client, readback)
            if observed == readback.expected:
                logger.info(
                    "Gateway %s verified after %d poll(s), fingerprint=%s",
                    session.gateway.identifier,
                    polls,
                    readback.expected[:12],
                )
                session.advance(SyncState.SUCCEEDED, self._now())
                return session

            remaining = deadline - self._clock()
            if remaining <= 0:
                self._mark_unknown(session.gateway)
                return self._fail(
                    session,
                    VerificationTimeout(
                        f"Gateway {session.gateway.identifier} did not report the pushed "
                        f"configuration within {self._verify_timeout_s:.0f}s "
                        f"({polls} polls); its state is unknown, re-discover it"
                    ),
                )

            if await self._pause(min(self._verify_poll_interval_s, remaining), cancel):
                return self._cancelled(session)

    async def _read_fingerprint(
        self, client: httpx.AsyncClient, readback: Readback
    ) -> str | None:
        try:
            response = await client.get(readback.path, params=readback.params)
            if response.status_code != 200:
                logger.debug("Readback returned HTTP %d", response.status_code)
                return None
            return readback.fingerprint(response)
        except (httpx.HTTPError, ValueError) as exc:
            # expected while the gateway reboots, including half-written bodies
            logger.debug("Readback failed: %s", exc)
            return None

    async def _pause(self, delay: float, cancel: asyncio.Event | None) -> bool:
        """Wait *delay* seconds; return ``True`` if *cancel* was set."""
        if cancel is None:
            await self._sleep(delay)
            return False
        if cancel.is_set():
            return True
        sleeper = asyncio.ensure_future(self._sleep(delay))
        waiter = asyncio.ensure_future(cancel.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        return cancel.is_set()

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _fail(self, session: SyncSession, error: SyncError) -> SyncSession:
        session.last_error = error
        session.advance(SyncState.FAILED, self._now())
        log = logger.warning if error.device_state_known else logger.error
        log(
            "Sync %s failed: %s",
            session.gateway.identifier,
            error,
            extra={"gateway": session.gateway.identifier, "sync_state": session.state.value},
        )
        return session

    def _cancelled(self, session: SyncSession) -> SyncSession:
        self._mark_unknown(session.gateway)
        return self._fail(
            session,
            SyncCancelled(
                f"Sync of {session.gateway.identifier} cancelled during "
                f"{session.state.value}: local polling stopped, but the accepted push "
                "cannot be undone and the gateway may still apply it"
            ),
        )


def _firmware_error_code(response: httpx.Response) -> int:
    """Return the ``err`` field of a JSON response body, 0 when absent."""
    try:
        body = response.json()
    except ValueError:
        return 0
    if isinstance(body, dict):
        err = body.get("err", 0)
        if isinstance(err, int):
            return err
    return 0
