"""One-to-one call signaling engine.

Keeps the session registry and pending candidate queues behind a single lock.
Each inbound event decides its outbound messages while holding the lock and
posts them to the recipients' connections. A handler only waits for replies
to its own connection; messages for other connections are fire-and-forget and
their failures are logged. The one exception is the offer to a callee, which
is awaited for at most ``delivery_timeout`` seconds before the call is unwound.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from functools import lru_cache, partial
from typing import Any, List, Optional, Tuple

from ..core.config import settings
from ..schemas.ice import IceConfiguration
from ..schemas.signaling import (
    ACCEPT,
    ACCEPTED,
    REJECTED,
    CallMessage,
    CallResponse,
    ErrorMessage,
    IceCandidate,
    IncomingCall,
    IncomingCallResponseMessage,
    OnIceCandidateMessage,
    OutboundMessage,
    RegisterMessage,
    RegisterResponse,
    SignalingStats,
    StopCommunication,
    StopMessage,
    parse_inbound,
)
from .candidates import CandidateQueue
from .errors import (
    IceConfigurationError,
    Malformed,
    NameConflict,
    NotInCall,
    NotRegistered,
    PeerBusy,
    SignalingError,
    UnknownTarget,
)
from .ice import IceConfigProvider, build_ice_provider
from .registry import CallState, SignalingConnection, UserRegistry, UserSession

logger = logging.getLogger(__name__)

Outbox = List[Tuple[SignalingConnection, OutboundMessage]]
Pending = List[Tuple[SignalingConnection, "asyncio.Future[None]"]]

REMOTE_HANGUP = "remote user hanged out"
USER_DECLINED = "user declined"


class CallSignalingEngine:
    """Route call setup messages between registered sessions."""

    def __init__(
        self,
        ice_provider: IceConfigProvider,
        *,
        max_queued_candidates: int = 100,
        delivery_timeout: float = 10.0,
    ) -> None:
        self._ice_provider = ice_provider
        self._delivery_timeout = delivery_timeout
        self._registry = UserRegistry()
        self._candidates = CandidateQueue(max_length=max_queued_candidates)
        self._lock = asyncio.Lock()

    @property
    def registry(self) -> UserRegistry:
        return self._registry

    @property
    def candidates(self) -> CandidateQueue:
        return self._candidates

    async def handle(self, connection: SignalingConnection, payload: object) -> None:
        """Dispatch one decoded inbound frame."""

        try:
            message = parse_inbound(payload)
        except Malformed as exc:
            logger.warning("Connection %s sent a malformed message: %s", connection.connection_id, exc.detail)
            await self.reply(connection, ErrorMessage(message=exc.detail))
            return

        if isinstance(message, RegisterMessage):
            await self.register(connection, message.name)
        elif isinstance(message, CallMessage):
            await self.call(connection, message.to, message.from_, message.sdp_offer)
        elif isinstance(message, IncomingCallResponseMessage):
            await self.incoming_call_response(connection, message.from_, message.call_response, message.sdp_answer)
        elif isinstance(message, StopMessage):
            await self.stop(connection.connection_id)
        elif isinstance(message, OnIceCandidateMessage):
            await self.on_ice_candidate(connection.connection_id, message.candidate)

    async def reply(self, connection: SignalingConnection, message: OutboundMessage) -> None:
        async with self._lock:
            pending = self._post([(connection, message)])
        await self._settle(pending, connection)

    async def register(self, connection: SignalingConnection, name: str | None) -> None:
        if not name:
            await self.reply(connection, RegisterResponse(response=REJECTED, message="empty user name"))
            return

        try:
            async with self._lock:
                self._check_can_register(connection.connection_id, name)

            # The credential lookup may do network I/O, so it runs unlocked and
            # the name is checked again before the session is inserted.
            ice_configuration = await self._ice_configuration(name)

            async with self._lock:
                self._check_can_register(connection.connection_id, name)
                self._registry.register(UserSession(name=name, connection=connection))
                pending = self._post(
                    [(connection, RegisterResponse(response=ACCEPTED, ice_configuration=ice_configuration))]
                )
        except SignalingError as exc:
            logger.info("Rejected registration of %r on connection %s: %s", name, connection.connection_id, exc.detail)
            await self.reply(connection, RegisterResponse(response=REJECTED, message=exc.detail))
            return

        logger.info("Registered %r on connection %s", name, connection.connection_id)
        await self._settle(pending, connection)

    async def call(
        self,
        connection: SignalingConnection,
        to: str,
        from_: str | None,
        sdp_offer: Any,
    ) -> None:
        async with self._lock:
            try:
                caller, callee = self._link_call(connection.connection_id, to, from_, sdp_offer)
            except SignalingError as exc:
                logger.info("Call from connection %s to %r rejected: %s", connection.connection_id, to, exc.detail)
                pending = self._post([(connection, CallResponse(response=REJECTED, message=exc.detail))])
                delivery = None
            else:
                delivery = callee.connection.post(IncomingCall(from_=caller.name, sdp_offer=sdp_offer).to_wire())

        if delivery is None:
            await self._settle(pending, connection)
            return

        try:
            await asyncio.wait_for(delivery, timeout=self._delivery_timeout)
        except asyncio.CancelledError:
            # Locked sections never await, so this cannot interleave with one.
            self._unwind_call(caller, callee)
            raise
        except Exception as exc:  # noqa: BLE001 - any delivery failure cancels the call
            cause = "timed out" if isinstance(exc, asyncio.TimeoutError) else str(exc)
            logger.warning("Could not deliver incoming call from %r to %r: %s", caller.name, callee.name, cause)
            async with self._lock:
                self._unwind_call(caller, callee)
                pending = self._post([(connection, CallResponse(response=REJECTED, message=f"Error {cause}"))])
            await self._settle(pending, connection)
            return

        logger.info("Call offered from %r to %r", caller.name, callee.name)

    async def incoming_call_response(
        self,
        connection: SignalingConnection,
        from_: str | None,
        call_response: str | None,
        sdp_answer: Any,
    ) -> None:
        async with self._lock:
            pending = self._post(self._respond_locked(connection, from_, call_response, sdp_answer))
        await self._settle(pending, connection)

    async def stop(self, connection_id: str) -> None:
        async with self._lock:
            self._post(self._stop_locked(connection_id))

    async def on_ice_candidate(self, connection_id: str, candidate: Any) -> None:
        async with self._lock:
            session = self._registry.get_by_id(connection_id)
            if session is None:
                logger.debug("Ignoring ICE candidate from unregistered connection %s", connection_id)
                return

            peer = self._call_partner(session)
            if peer is None:
                self._candidates.append(connection_id, candidate)
                logger.debug(
                    "Queued ICE candidate from %r (%d pending)",
                    session.name,
                    self._candidates.pending(connection_id),
                )
                return

            outbox: Outbox = [
                (peer.connection, IceCandidate(candidate=queued))
                for queued in self._candidates.drain(connection_id)
            ]
            outbox.append((peer.connection, IceCandidate(candidate=candidate)))
            self._post(outbox)

    async def unregister_on_disconnect(self, connection_id: str) -> None:
        async with self._lock:
            self._post(self._stop_locked(connection_id))
            session = self._registry.remove(connection_id)
            self._candidates.clear(connection_id)
        if session is not None:
            logger.info("Unregistered %r after connection %s went away", session.name, connection_id)

    async def stats(self) -> SignalingStats:
        async with self._lock:
            states = Counter(session.state.value for session in self._registry)
            return SignalingStats(
                registered=len(self._registry),
                states={state.value: states.get(state.value, 0) for state in CallState},
                pending_candidate_queues=len(self._candidates),
            )

    # Helpers below run with the lock held.

    def _check_can_register(self, connection_id: str, name: str) -> None:
        existing = self._registry.get_by_id(connection_id)
        if existing is not None:
            raise NameConflict(f"Connection already registered as {existing.name}")
        if self._registry.get_by_name(name) is not None:
            raise NameConflict(f"User {name} is already registered")

    async def _ice_configuration(self, name: str) -> IceConfiguration:
        try:
            return await self._ice_provider.get_ice_configuration(name)
        except IceConfigurationError:
            raise
        except Exception as exc:  # noqa: BLE001 - provider failures reject the registration
            logger.exception("ICE configuration provider failed for %r", name)
            raise IceConfigurationError() from exc

    def _link_call(
        self,
        caller_id: str,
        to: str,
        from_: str | None,
        sdp_offer: Any,
    ) -> Tuple[UserSession, UserSession]:
        caller = self._registry.get_by_id(caller_id)
        if caller is None:
            raise NotRegistered("You must register before calling")
        callee = self._registry.get_by_name(to)
        if callee is None:
            raise UnknownTarget(f"User {to} is not registered")
        if callee is caller:
            raise UnknownTarget("Cannot call yourself")
        if caller.state is not CallState.IDLE:
            raise PeerBusy(f"Already in a call with {caller.peer_name}")
        if callee.state is not CallState.IDLE:
            raise PeerBusy(f"User {to} is busy")
        if from_ and from_ != caller.name:
            logger.warning("Connection %s claims to be %r but is registered as %r", caller_id, from_, caller.name)

        caller.sdp_offer = sdp_offer
        caller.link(callee.name, CallState.OFFER_SENT)
        callee.link(caller.name, CallState.OFFER_RECEIVED)
        return caller, callee

    def _unwind_call(self, caller: UserSession, callee: UserSession) -> None:
        if caller.peer_name == callee.name and caller.state is CallState.OFFER_SENT:
            caller.unlink()
            self._candidates.clear(caller.connection_id)
        if callee.peer_name == caller.name and callee.state is CallState.OFFER_RECEIVED:
            callee.unlink()
            self._candidates.clear(callee.connection_id)

    def _respond_locked(
        self,
        connection: SignalingConnection,
        from_: str | None,
        call_response: str | None,
        sdp_answer: Any,
    ) -> Outbox:
        callee = self._registry.get_by_id(connection.connection_id)
        if callee is None:
            return [(connection, StopCommunication(message=NotRegistered.default_detail))]

        caller = self._registry.get_by_name(from_)
        if caller is None:
            if callee.state is CallState.OFFER_RECEIVED and callee.peer_name == from_:
                callee.unlink()
                self._candidates.clear(callee.connection_id)
            return [(connection, StopCommunication(message=UnknownTarget(f"unknown from = {from_}").detail))]

        if not (
            callee.state is CallState.OFFER_RECEIVED
            and callee.peer_name == caller.name
            and caller.state is CallState.OFFER_SENT
            and caller.peer_name == callee.name
        ):
            detail = NotInCall(f"No pending call from {caller.name}").detail
            logger.info("%r answered a call that was never offered: %s", callee.name, detail)
            return [(connection, StopCommunication(message=detail))]

        if call_response == ACCEPT:
            caller.link(callee.name, CallState.IN_CALL)
            caller.sdp_offer = None
            callee.link(caller.name, CallState.IN_CALL)
            outbox: Outbox = [(caller.connection, CallResponse(response=ACCEPTED, sdp_answer=sdp_answer))]
            outbox.extend(
                (caller.connection, IceCandidate(candidate=candidate))
                for candidate in self._candidates.drain(callee.connection_id)
            )
            outbox.extend(
                (callee.connection, IceCandidate(candidate=candidate))
                for candidate in self._candidates.drain(caller.connection_id)
            )
            logger.info("Call between %r and %r accepted", caller.name, callee.name)
            return outbox

        caller.unlink()
        callee.unlink()
        self._candidates.clear(caller.connection_id)
        self._candidates.clear(callee.connection_id)
        logger.info("Call from %r declined by %r", caller.name, callee.name)
        return [
            (caller.connection, CallResponse(response=REJECTED, message=USER_DECLINED)),
            (callee.connection, StopCommunication()),
        ]

    def _stop_locked(self, connection_id: str) -> Outbox:
        self._candidates.clear(connection_id)
        session = self._registry.get_by_id(connection_id)
        if session is None or session.peer_name is None:
            return []

        peer = self._registry.get_by_name(session.peer_name)
        session.unlink()
        if peer is None or peer.peer_name != session.name:
            return []

        peer.unlink()
        self._candidates.clear(peer.connection_id)
        logger.info("Call between %r and %r stopped by %r", session.name, peer.name, session.name)
        return [(peer.connection, StopCommunication(message=REMOTE_HANGUP))]

    def _call_partner(self, session: UserSession) -> Optional[UserSession]:
        if session.state is not CallState.IN_CALL:
            return None
        peer = self._registry.get_by_name(session.peer_name)
        if peer is None or peer.peer_name != session.name:
            return None
        return peer

    @staticmethod
    def _post(outbox: Outbox) -> Pending:
        """Queue messages on their connections; called with the lock held."""

        pending: Pending = []
        for connection, message in outbox:
            future = connection.post(message.to_wire())
            future.add_done_callback(partial(_report_delivery, connection.connection_id, message.id))
            pending.append((connection, future))
        return pending

    @staticmethod
    async def _settle(pending: Pending, origin: SignalingConnection) -> None:
        """Wait until the replies to ``origin`` are written; others are not waited on."""

        own = [future for connection, future in pending if connection is origin]
        if own:
            await asyncio.wait(own)


def _report_delivery(connection_id: str, message_id: str, future: "asyncio.Future[None]") -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.warning("Failed to deliver %s to connection %s: %s", message_id, connection_id, exc)


@lru_cache(maxsize=1)
def _engine_factory() -> CallSignalingEngine:
    return CallSignalingEngine(
        build_ice_provider(settings),
        max_queued_candidates=settings.max_queued_candidates,
        delivery_timeout=settings.delivery_timeout,
    )


def get_engine() -> CallSignalingEngine:
    """Return the process-wide signaling engine."""

    return _engine_factory()
