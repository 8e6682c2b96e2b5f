"""Flow orchestrator: drives one flow's steps through the OAuth protocol.

Each action looks up the flow's actionable step of one type, moves it to
in_progress, runs the protocol call, and then in a single transition marks
the step complete (or error), updates the flow's accumulated fields and
appends the successor step:

  start          --submit_start-->          complete  ⇒ + discovery
  discovery      --discover-->              complete  ⇒ + registration
                                                          (dynamic iff the
                                                          server advertises a
                                                          registration endpoint)
  registration   --register | manual-->     complete  ⇒ + authorization
  authorization  --authorize-->             complete  ⇒ + callback, save the
                                                          pre-redirect record
  callback       --handle_callback-->       complete  ⇒ + token
  token          --exchange_token-->        complete  ⇒ + refresh iff a
                                                          refresh_token came back
  refresh        --refresh-->               complete  ⇒ + refresh (same rule,
                                                          one pending at a time)
  introspect / revoke                       complete     (no successor)

Any FlowError from a call becomes the step's error status with the captured
exchange; none escapes an action.  Actions addressed at a missing flow, or
at a step that is not actionable (in_progress, or complete without an edit),
are logged and leave the state unchanged.

A step in error is re-run from scratch.  A step reopened with edit_step keeps
its successors until it is actually resubmitted; resubmission truncates the
flow after it exactly as reset_step would.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any

from app.core.config import DeliveryMode, Settings
from app.core.errors import FlowError, IntegrityError, ProtocolError, TransportError, ValidationError
from app.core.logging import presence
from app.core.metrics import PROTOCOL_CALLS
from app.models.flow import AppState, Flow
from app.models.http_exchange import now_ms
from app.models.redirect_records import PendingCallback, PreRedirect
from app.models.step import (
    AuthorizationStep,
    CallbackStep,
    RefreshStep,
    Step,
    StepType,
    TokenStep,
    blank_step,
    new_step,
    with_status,
)
from app.repos.ephemeral_repo import EphemeralStore
from app.services import flow_store, oauth_client, pkce_service
from app.services.delivery import Delivery
from app.services.oauth_client import (
    AuthorizationParams,
    ClientAuth,
    RefreshRequestParams,
    RegistrationRequest,
    TokenProbeParams,
    TokenRequestParams,
)
from app.services.state_holder import AppStateHolder

logger = logging.getLogger(__name__)

# Steps a user may add by hand once the flow holds tokens.
APPENDABLE_STEPS: frozenset[str] = frozenset({"refresh", "introspect", "revoke"})


@dataclass(frozen=True, slots=True)
class Deliveries:
    direct: Delivery
    relay: Delivery
    default_mode: DeliveryMode = "relay"

    def pick(self, mode: DeliveryMode | None) -> Delivery:
        return self.direct if (mode or self.default_mode) == "direct" else self.relay


@dataclass(frozen=True, slots=True)
class AuthorizeResult:
    state: AppState
    authorization_url: str | None


def _outcome(exc: FlowError) -> str:
    if isinstance(exc, ProtocolError):
        return "protocol_error"
    if isinstance(exc, TransportError):
        return "transport_error"
    return "validation_error"


def _last_of(flow: Flow, step_type: StepType) -> Step | None:
    for step in reversed(flow.steps):
        if step.type == step_type:
            return step
    return None


def _auth_fields(auth: ClientAuth) -> dict[str, Any]:
    return {
        "auth_method": auth.method,
        "client_id": auth.client_id,
        "client_secret": auth.client_secret,
    }


def _auth_from_step(step: Any) -> ClientAuth:
    return ClientAuth(
        method=step.auth_method or "none",
        client_id=step.client_id,
        client_secret=step.client_secret,
    )


class FlowOrchestrator:
    def __init__(
        self,
        holder: AppStateHolder,
        deliveries: Deliveries,
        callback_store: EphemeralStore[PendingCallback],
        redirect_store: EphemeralStore[PreRedirect],
        settings: Settings,
    ) -> None:
        self._holder = holder
        self._deliveries = deliveries
        self._callbacks = callback_store
        self._redirects = redirect_store
        self._settings = settings

    @property
    def state(self) -> AppState:
        return self._holder.state

    def get_flow(self, flow_id: str) -> Flow | None:
        return flow_store.get_flow(self.state, flow_id)

    # ------------------------------------------------------------------
    # Flow management
    # ------------------------------------------------------------------

    async def create_flow(self, name: str | None = None) -> tuple[AppState, Flow]:
        created: list[Flow] = []

        def _create(state: AppState) -> AppState:
            new_state, flow = flow_store.create_flow(state, name)
            created.append(flow)
            return new_state

        state = await self._holder.apply(_create)
        logger.info("created flow %s (%s)", created[0].id, created[0].name)
        return state, created[0]

    async def rename_flow(self, flow_id: str, name: str) -> AppState:
        return await self._holder.apply(lambda s: flow_store.rename_flow(s, flow_id, name))

    async def delete_flow(self, flow_id: str) -> AppState:
        return await self._holder.apply(lambda s: flow_store.delete_flow(s, flow_id))

    async def select_flow(self, flow_id: str | None) -> AppState:
        return await self._holder.apply(lambda s: flow_store.set_active_flow(s, flow_id))

    async def fork_flow(
        self, flow_id: str, step_index: int, name: str | None = None
    ) -> tuple[AppState, Flow | None]:
        forked: list[Flow] = []

        def _fork(state: AppState) -> AppState:
            result = flow_store.fork_flow(state, flow_id, step_index, name)
            if result is None:
                return state
            forked.append(result[1])
            return result[0]

        state = await self._holder.apply(_fork)
        if not forked:
            logger.warning("cannot fork flow %s at step %d", flow_id, step_index)
            return state, None
        logger.info("forked flow %s at step %d into %s", flow_id, step_index, forked[0].id)
        return state, forked[0]

    # ------------------------------------------------------------------
    # Step lifecycle helpers
    # ------------------------------------------------------------------

    def _log(self, flow_id: str, step: Step, message: str, *args: Any) -> None:
        logger.info(
            f"FLOW [{step.type}] {message}",
            *args,
            extra={"flow_id": flow_id, "step": step.type},
        )

    async def _begin(self, flow_id: str, step_type: StepType) -> tuple[Flow, Step] | None:
        """Move the flow's actionable ``step_type`` step to in_progress.

        Returns the flow as it stands afterwards together with the
        in_progress step, or None when there is nothing to act on.
        """
        flow = self.get_flow(flow_id)
        if flow is None:
            logger.warning("FLOW [%s] unknown flow %s", step_type, flow_id)
            return None
        step = _last_of(flow, step_type)
        if step is None or step.status not in ("pending", "error"):
            logger.warning(
                "FLOW [%s] no actionable step in flow %s (status=%s)",
                step_type,
                flow_id,
                step.status if step is not None else None,
            )
            return None

        index = flow.index_of(step.id)
        running = with_status(blank_step(step), "in_progress")

        def _start(state: AppState) -> AppState:
            if step.edited and index < len(flow.steps) - 1:
                # Resubmitting an edited step discards everything after it.
                state = flow_store.truncate_flow(
                    state, flow_id, index, clear=flow_store.RESET_CLEARS[step.type]
                )
            return flow_store.replace_step(state, flow_id, running)

        state = await self._holder.apply(_start)
        self._log(flow_id, running, "in progress")
        current = flow_store.get_flow(state, flow_id)
        assert current is not None
        return current, running

    async def _complete(
        self,
        flow_id: str,
        step: Step,
        *,
        flow_fields: dict[str, Any] | None = None,
        successor: Step | None = None,
        **step_fields: Any,
    ) -> AppState:
        done = with_status(step, "complete", completed_at=now_ms(), error=None, **step_fields)

        def _finish(state: AppState) -> AppState:
            state = flow_store.replace_step(state, flow_id, done)
            if flow_fields:
                state = flow_store.update_flow_state(state, flow_id, **flow_fields)
            if successor is not None:
                state = flow_store.add_step(state, flow_id, successor)
            return state

        state = await self._holder.apply(_finish)
        self._log(
            flow_id,
            step,
            "complete%s",
            f", next: {successor.type}" if successor is not None else "",
        )
        return state

    async def _fail(
        self, flow_id: str, step: Step, exc: FlowError, **step_fields: Any
    ) -> AppState:
        failed = with_status(
            step, "error", error=exc.message, http_exchange=exc.exchange, **step_fields
        )
        state = await self._holder.apply(lambda s: flow_store.replace_step(s, flow_id, failed))
        logger.warning(
            "FLOW [%s] error: %s",
            step.type,
            exc.message,
            extra={"flow_id": flow_id, "step": step.type},
        )
        return state

    def _metadata_endpoint(self, flow: Flow, key: str, label: str) -> str:
        endpoint = (flow.metadata or {}).get(key)
        if not endpoint:
            raise ValidationError(f"Server metadata has no {label}")
        return str(endpoint)

    @staticmethod
    def _count(operation: str, exc: FlowError | None = None) -> None:
        outcome = "ok" if exc is None else _outcome(exc)
        PROTOCOL_CALLS.labels(operation=operation, outcome=outcome).inc()

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------

    async def submit_start(self, flow_id: str, server_url: str) -> AppState:
        begun = await self._begin(flow_id, "start")
        if begun is None:
            return self.state
        _, step = begun
        server_url = server_url.strip()
        try:
            # Both discovery URLs derive from this one; reject it here rather
            # than at discovery time.
            oauth_client.build_discovery_url(server_url)
        except ValidationError as exc:
            return await self._fail(flow_id, step, exc, server_url=server_url)

        return await self._complete(
            flow_id,
            step,
            server_url=server_url,
            flow_fields={"server_url": server_url},
            successor=new_step("discovery"),
        )

    # ------------------------------------------------------------------
    # discovery
    # ------------------------------------------------------------------

    async def discover(self, flow_id: str, mode: DeliveryMode | None = None) -> AppState:
        begun = await self._begin(flow_id, "discovery")
        if begun is None:
            return self.state
        flow, step = begun
        try:
            if not flow.server_url:
                raise ValidationError("Server URL is not set")
            res = await oauth_client.discover_metadata(
                flow.server_url, self._deliveries.pick(mode)
            )
        except FlowError as exc:
            self._count("discovery", exc)
            return await self._fail(flow_id, step, exc)

        self._count("discovery")
        metadata: dict[str, Any] = res.result
        registration_mode = "dynamic" if metadata.get("registration_endpoint") else "manual"
        return await self._complete(
            flow_id,
            step,
            metadata=metadata,
            http_exchange=res.exchange,
            flow_fields={"metadata": metadata},
            successor=new_step("registration", mode=registration_mode),
        )

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------

    def registration_defaults(self) -> RegistrationRequest:
        return oauth_client.default_registration_request(
            self._settings.redirect_uri, self._settings.client_name
        )

    async def register(
        self, flow_id: str, request: RegistrationRequest | None = None
    ) -> AppState:
        begun = await self._begin(flow_id, "registration")
        if begun is None:
            return self.state
        flow, step = begun
        request = request or self.registration_defaults()
        submitted = dataclasses.asdict(request)
        try:
            endpoint = self._metadata_endpoint(
                flow, "registration_endpoint", "registration_endpoint"
            )
            # Registration endpoints rarely allow cross-origin calls; always relay.
            res = await oauth_client.register_client(
                endpoint, request, self._deliveries.relay
            )
        except FlowError as exc:
            self._count("registration", exc)
            return await self._fail(flow_id, step, exc, mode="dynamic", request=submitted)

        self._count("registration")
        return await self._complete(
            flow_id,
            step,
            mode="dynamic",
            request=submitted,
            credentials=res.result,
            http_exchange=res.exchange,
            flow_fields={"credentials": res.result},
            successor=new_step("authorization"),
        )

    async def set_manual_credentials(
        self, flow_id: str, client_id: str, client_secret: str | None = None
    ) -> AppState:
        begun = await self._begin(flow_id, "registration")
        if begun is None:
            return self.state
        _, step = begun
        if not client_id.strip():
            return await self._fail(
                flow_id, step, ValidationError("client_id is required"), mode="manual"
            )

        credentials: dict[str, Any] = {"client_id": client_id.strip()}
        if client_secret:
            credentials["client_secret"] = client_secret
        return await self._complete(
            flow_id,
            step,
            mode="manual",
            credentials=credentials,
            http_exchange=None,
            flow_fields={"credentials": credentials},
            successor=new_step("authorization"),
        )

    # ------------------------------------------------------------------
    # authorization
    # ------------------------------------------------------------------

    def authorization_defaults(self, flow_id: str) -> tuple[AuthorizationParams, str | None] | None:
        """Parameters for the next authorization request.

        A previously submitted request is returned verbatim (including its
        PKCE verifier) so it can be replayed exactly; otherwise fresh PKCE
        material and state are generated.
        """
        flow = self.get_flow(flow_id)
        if flow is None:
            return None
        step = _last_of(flow, "authorization")
        if isinstance(step, AuthorizationStep) and step.client_id is not None:
            return (
                AuthorizationParams(
                    client_id=step.client_id,
                    redirect_uri=step.redirect_uri or "",
                    state=step.state or "",
                    code_challenge=step.code_challenge or "",
                    code_challenge_method=step.code_challenge_method or "",
                    scope=step.scope,
                    response_type=step.response_type or "",
                ),
                step.code_verifier,
            )

        credentials = flow.credentials or {}
        metadata = flow.metadata or {}
        registered_uris = credentials.get("redirect_uris") or []
        supported_scopes = metadata.get("scopes_supported") or []
        pkce = pkce_service.generate_pkce()
        return (
            AuthorizationParams(
                client_id=str(credentials.get("client_id") or ""),
                redirect_uri=registered_uris[0] if registered_uris else self._settings.redirect_uri,
                state=pkce_service.generate_state(),
                code_challenge=pkce.code_challenge,
                code_challenge_method=pkce.code_challenge_method,
                scope=" ".join(supported_scopes) if supported_scopes else "openid",
            ),
            pkce.code_verifier,
        )

    async def authorize(
        self,
        flow_id: str,
        params: AuthorizationParams | None = None,
        code_verifier: str | None = None,
    ) -> AuthorizeResult:
        """Build the authorization URL and park the flow until the callback.

        The caller is responsible for sending the browser to the returned URL.
        """
        if params is None:
            defaults = self.authorization_defaults(flow_id)
            if defaults is not None:
                params, code_verifier = defaults

        begun = await self._begin(flow_id, "authorization")
        if begun is None or params is None:
            return AuthorizeResult(self.state, None)
        flow, step = begun

        submitted = {
            "response_type": params.response_type,
            "client_id": params.client_id,
            "redirect_uri": params.redirect_uri,
            "scope": params.scope,
            "state": params.state,
            "code_challenge": params.code_challenge,
            "code_challenge_method": params.code_challenge_method,
            "code_verifier": code_verifier,
        }
        try:
            endpoint = self._metadata_endpoint(
                flow, "authorization_endpoint", "authorization_endpoint"
            )
            authorization_url = oauth_client.build_authorization_url(endpoint, params)
        except FlowError as exc:
            return AuthorizeResult(await self._fail(flow_id, step, exc, **submitted), None)

        sent_state = oauth_client.resolve_optional(params.state)
        try:
            await self._redirects.save(
                PreRedirect(
                    flow_id=flow_id,
                    code_verifier=code_verifier,
                    state=sent_state if isinstance(sent_state, str) else None,
                )
            )
        except FlowError as exc:
            return AuthorizeResult(await self._fail(flow_id, step, exc, **submitted), None)

        state = await self._complete(
            flow_id,
            step,
            authorization_url=authorization_url,
            successor=new_step("callback"),
            **submitted,
        )
        return AuthorizeResult(state, authorization_url)

    # ------------------------------------------------------------------
    # callback
    # ------------------------------------------------------------------

    async def capture_callback(self, callback: PendingCallback) -> None:
        """Record what the authorization server sent back (one slot).

        Raises TransportError when the record cannot be stored.
        """
        await self._callbacks.save(callback)

    async def handle_callback(self) -> tuple[AppState, str | None]:
        """Resume the suspended flow from the pending callback record.

        Returns the state and the id of the flow that was resumed (None when
        nothing was processed).  Both ephemeral records are cleared whatever
        the outcome.  Raises TransportError when the records cannot be read;
        no flow is known at that point, so there is no step to fail.
        """
        try:
            callback = await self._callbacks.get()
            if callback is None:
                return self.state, None
            redirect = await self._redirects.get()
            if redirect is None:
                logger.warning("FLOW [callback] no pre-redirect record, ignoring callback")
                return self.state, None
            return await self._resume(callback, redirect), redirect.flow_id
        finally:
            await self._discard_redirect_records()

    async def _discard_redirect_records(self) -> None:
        for store in (self._callbacks, self._redirects):
            try:
                await store.clear()
            except FlowError as exc:
                logger.warning("FLOW [callback] could not clear record: %s", exc.message)

    async def _resume(self, callback: PendingCallback, redirect: PreRedirect) -> AppState:
        flow_id = redirect.flow_id
        flow = self.get_flow(flow_id)
        if flow is None or _last_of(flow, "callback") is None:
            logger.warning("FLOW [callback] flow %s has no callback step", flow_id)
            return self.state

        await self.select_flow(flow_id)
        begun = await self._begin(flow_id, "callback")
        if begun is None:
            return self.state
        _, step = begun

        returned = {
            "state": callback.state,
            "iss": callback.iss,
            "extra_params": dict(callback.extra_params),
            "callback_url": callback.callback_url,
        }
        if callback.state != redirect.state:
            return await self._fail(
                flow_id,
                step,
                IntegrityError("State mismatch - possible CSRF attack"),
                **returned,
            )
        if callback.error:
            failed = with_status(
                step,
                "error",
                error=callback.error,
                error_description=callback.error_description,
                **returned,
            )
            logger.warning(
                "FLOW [callback] authorization server returned error=%s",
                callback.error,
                extra={"flow_id": flow_id, "step": "callback"},
            )
            return await self._holder.apply(
                lambda s: flow_store.replace_step(s, flow_id, failed)
            )
        if not callback.code:
            return await self._fail(
                flow_id,
                step,
                ValidationError("Callback carried neither code nor error"),
                **returned,
            )

        state = await self._complete(
            flow_id, step, code=callback.code, successor=new_step("token"), **returned
        )
        # A flow forked after authorization may have lost the verifier.
        auth = _last_of(self.get_flow(flow_id) or flow, "authorization")
        if isinstance(auth, AuthorizationStep) and not auth.code_verifier and redirect.code_verifier:
            state = await self._holder.apply(
                lambda s: flow_store.update_step(
                    s, flow_id, auth.id, code_verifier=redirect.code_verifier
                )
            )
        return state

    # ------------------------------------------------------------------
    # token / refresh
    # ------------------------------------------------------------------

    def _default_client_auth(self, flow: Flow) -> ClientAuth:
        credentials = flow.credentials or {}
        secret = credentials.get("client_secret")
        method = credentials.get("token_endpoint_auth_method") or (
            "client_secret_basic" if secret else "none"
        )
        return ClientAuth(
            method=str(method),
            client_id=credentials.get("client_id"),
            client_secret=secret,
        )

    def token_defaults(self, flow_id: str) -> TokenRequestParams | None:
        flow = self.get_flow(flow_id)
        if flow is None:
            return None
        step = _last_of(flow, "token")
        if isinstance(step, TokenStep) and step.code is not None:
            return TokenRequestParams(
                code=step.code,
                redirect_uri=step.redirect_uri,
                code_verifier=step.code_verifier,
                auth=_auth_from_step(step),
                grant_type=step.grant_type or "authorization_code",
                extra_params=dict(step.extra_params),
            )
        callback = _last_of(flow, "callback")
        auth_step = _last_of(flow, "authorization")
        return TokenRequestParams(
            code=(callback.code if isinstance(callback, CallbackStep) else None) or "",
            redirect_uri=(
                auth_step.redirect_uri
                if isinstance(auth_step, AuthorizationStep)
                else self._settings.redirect_uri
            ),
            code_verifier=(
                auth_step.code_verifier if isinstance(auth_step, AuthorizationStep) else None
            ),
            auth=self._default_client_auth(flow),
        )

    async def exchange_token(
        self,
        flow_id: str,
        params: TokenRequestParams | None = None,
        mode: DeliveryMode | None = None,
    ) -> AppState:
        params = params or self.token_defaults(flow_id)
        begun = await self._begin(flow_id, "token")
        if begun is None or params is None:
            return self.state
        flow, step = begun

        submitted = {
            "grant_type": params.grant_type,
            "code": params.code,
            "redirect_uri": params.redirect_uri,
            "code_verifier": params.code_verifier,
            "extra_params": dict(params.extra_params),
            **_auth_fields(params.auth),
        }
        try:
            endpoint = self._metadata_endpoint(flow, "token_endpoint", "token_endpoint")
            submitted["token_endpoint"] = endpoint
            res = await oauth_client.exchange_token(
                endpoint, params, self._deliveries.pick(mode)
            )
        except FlowError as exc:
            self._count("token", exc)
            return await self._fail(flow_id, step, exc, **submitted)

        self._count("token")
        tokens: dict[str, Any] = res.result
        return await self._complete(
            flow_id,
            step,
            tokens=tokens,
            http_exchange=res.exchange,
            flow_fields={"tokens": tokens},
            successor=new_step("refresh") if tokens.get("refresh_token") else None,
            **submitted,
        )

    def refresh_defaults(self, flow_id: str) -> RefreshRequestParams | None:
        flow = self.get_flow(flow_id)
        if flow is None:
            return None
        step = _last_of(flow, "refresh")
        if isinstance(step, RefreshStep) and step.refresh_token is not None:
            return RefreshRequestParams(
                refresh_token=step.refresh_token,
                scope=step.scope,
                auth=_auth_from_step(step),
                grant_type=step.grant_type or "refresh_token",
                extra_params=dict(step.extra_params),
            )
        return RefreshRequestParams(
            refresh_token=str((flow.tokens or {}).get("refresh_token") or ""),
            auth=self._default_client_auth(flow),
        )

    async def refresh(
        self,
        flow_id: str,
        params: RefreshRequestParams | None = None,
        mode: DeliveryMode | None = None,
    ) -> AppState:
        params = params or self.refresh_defaults(flow_id)
        begun = await self._begin(flow_id, "refresh")
        if begun is None or params is None:
            return self.state
        flow, step = begun

        submitted = {
            "grant_type": params.grant_type,
            "refresh_token": params.refresh_token,
            "scope": params.scope,
            "extra_params": dict(params.extra_params),
            **_auth_fields(params.auth),
        }
        try:
            endpoint = self._metadata_endpoint(flow, "token_endpoint", "token_endpoint")
            submitted["token_endpoint"] = endpoint
            res = await oauth_client.refresh_token(
                endpoint, params, self._deliveries.pick(mode)
            )
        except FlowError as exc:
            self._count("refresh", exc)
            return await self._fail(flow_id, step, exc, **submitted)

        self._count("refresh")
        fresh: dict[str, Any] = res.result
        done = with_status(
            step,
            "complete",
            completed_at=now_ms(),
            error=None,
            tokens=fresh,
            http_exchange=res.exchange,
            **submitted,
        )

        def _finish(state: AppState) -> AppState:
            state = flow_store.replace_step(state, flow_id, done)
            current = flow_store.get_flow(state, flow_id)
            if current is None:
                return state
            # Merge, never replace: a refresh response may leave out fields
            # (often the refresh_token itself) that are still valid.
            merged = {**(current.tokens or {}), **fresh}
            state = flow_store.update_flow_state(state, flow_id, tokens=merged)
            another_pending = any(
                s.type == "refresh" and s.id != step.id and s.status == "pending"
                for s in current.steps
            )
            if fresh.get("refresh_token") and not another_pending:
                state = flow_store.add_step(state, flow_id, new_step("refresh"))
            return state

        state = await self._holder.apply(_finish)
        self._log(
            flow_id,
            step,
            "complete, tokens merged  refresh_token=%s",
            presence(fresh.get("refresh_token")),
        )
        return state

    # ------------------------------------------------------------------
    # introspect / revoke
    # ------------------------------------------------------------------

    def probe_defaults(self, flow_id: str) -> TokenProbeParams | None:
        flow = self.get_flow(flow_id)
        if flow is None:
            return None
        return TokenProbeParams(
            token=str((flow.tokens or {}).get("access_token") or ""),
            token_type_hint="access_token",
            auth=self._default_client_auth(flow),
        )

    def _probe_fields(self, params: TokenProbeParams) -> dict[str, Any]:
        return {
            "token": params.token,
            "token_type_hint": params.token_type_hint,
            **_auth_fields(params.auth),
        }

    async def introspect(
        self,
        flow_id: str,
        params: TokenProbeParams | None = None,
        mode: DeliveryMode | None = None,
    ) -> AppState:
        params = params or self.probe_defaults(flow_id)
        begun = await self._begin(flow_id, "introspect")
        if begun is None or params is None:
            return self.state
        flow, step = begun

        submitted = self._probe_fields(params)
        try:
            endpoint = self._metadata_endpoint(
                flow, "introspection_endpoint", "introspection_endpoint"
            )
            submitted["introspection_endpoint"] = endpoint
            res = await oauth_client.introspect_token(
                endpoint, params, self._deliveries.pick(mode)
            )
        except FlowError as exc:
            self._count("introspect", exc)
            return await self._fail(flow_id, step, exc, **submitted)

        self._count("introspect")
        return await self._complete(
            flow_id, step, token_info=res.result, http_exchange=res.exchange, **submitted
        )

    async def revoke(
        self,
        flow_id: str,
        params: TokenProbeParams | None = None,
        mode: DeliveryMode | None = None,
    ) -> AppState:
        params = params or self.probe_defaults(flow_id)
        begun = await self._begin(flow_id, "revoke")
        if begun is None or params is None:
            return self.state
        flow, step = begun

        submitted = self._probe_fields(params)
        try:
            endpoint = self._metadata_endpoint(
                flow, "revocation_endpoint", "revocation_endpoint"
            )
            submitted["revocation_endpoint"] = endpoint
            res = await oauth_client.revoke_token(
                endpoint, params, self._deliveries.pick(mode)
            )
        except FlowError as exc:
            self._count("revoke", exc)
            return await self._fail(flow_id, step, exc, **submitted)

        self._count("revoke")
        return await self._complete(
            flow_id, step, revoked=bool(res.result), http_exchange=res.exchange, **submitted
        )

    # ------------------------------------------------------------------
    # append / edit / reset
    # ------------------------------------------------------------------

    async def append_step(self, flow_id: str, step_type: StepType) -> AppState:
        """Add a pending refresh, introspect or revoke step to a flow holding tokens."""
        flow = self.get_flow(flow_id)
        if flow is None or step_type not in APPENDABLE_STEPS:
            logger.warning("cannot append %s step to flow %s", step_type, flow_id)
            return self.state
        tokens = flow.tokens or {}
        if not tokens or (step_type == "refresh" and not tokens.get("refresh_token")):
            logger.warning("flow %s holds no token for a %s step", flow_id, step_type)
            return self.state
        return await self._holder.apply(
            lambda s: flow_store.add_step(s, flow_id, new_step(step_type))
        )

    async def edit_step(self, flow_id: str, step_id: str) -> AppState:
        """Reopen a finished step for editing, keeping what it submitted."""
        flow = self.get_flow(flow_id)
        index = flow.index_of(step_id) if flow is not None else -1
        if flow is None or index == -1:
            logger.warning("cannot edit step %s of flow %s", step_id, flow_id)
            return self.state
        step = flow.steps[index]
        # The callback step only ever resumes from the redirect.
        if step.type == "callback" or step.status not in ("complete", "error"):
            logger.warning("FLOW [%s] step is not editable (status=%s)", step.type, step.status)
            return self.state
        reopened = with_status(step, "pending", edited=True)
        return await self._holder.apply(
            lambda s: flow_store.replace_step(s, flow_id, reopened)
        )

    async def reset_step(self, flow_id: str, step_id: str) -> AppState:
        state = await self._holder.apply(
            lambda s: flow_store.reset_step(s, flow_id, step_id)
        )
        logger.info("reset step %s of flow %s", step_id, flow_id, extra={"flow_id": flow_id})
        return state
