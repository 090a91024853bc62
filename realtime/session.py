"""Socket.IO handlers: connection lifecycle, sign-in, presence and profile."""

import logging
import math

from flask import request
from flask_socketio import emit

from errors import BannedError, RateLimited, SessionExpired
from security import parse_limit_value, simple_rate_limit


def register(socketio, settings, ctx):
    """Register Socket.IO event handlers for this module."""
    service = ctx.service

    def _signed_in(ident, token=None):
        service.connect(request.sid, ident, ctx.client_ip())
        out = ctx.ok(user=service.whoami(ident))
        if token:
            out["token"] = token
        return out

    def _throttle(action, default_limit):
        """Per-IP sliding window for sign-in events, sharing the HTTP rate_limit_* values."""
        if not settings.get("socket_auth_rate_limits_enabled", True):
            return
        ip = ctx.client_ip()
        lim, win = parse_limit_value(settings.get(f"rate_limit_{action}"), default_limit, 60)
        ok, retry_after = simple_rate_limit(f"socket:{action}:{ip}", limit=lim, window_sec=win)
        if not ok:
            logging.warning("Socket %s throttled for %s", action, ip)
            raise RateLimited(int(math.ceil(retry_after * 1000)), "Too many attempts. Try again shortly.")

    @socketio.on("connect")
    def handle_connect(auth=None):
        sid = request.sid
        ip = ctx.client_ip()
        try:
            service.moderation.check_ip(ip)
            ident, _token = ctx.identity_from_handshake(auth)
        except BannedError as e:
            raise ConnectionRefusedError(e.to_dict())
        except SessionExpired as e:
            emit("session_expired", e.to_dict(), to=sid)
            ident = None

        if ident is not None:
            service.connect(sid, ident, ip)
            emit("hello", service.whoami(ident), to=sid)
            emit("inbox", service.inbox(ident.id), to=sid)
        emit("presence", service.presence_payload(), to=sid)

    @socketio.on("disconnect")
    def handle_disconnect(*args, **kwargs):
        conn = service.detach(request.sid)
        if conn is None:
            return
        logging.debug("Socket %s for %s disconnected", request.sid, conn.identity_id)

    @socketio.on("login")
    @ctx.guarded
    def handle_login(data=None):
        _throttle("login", 10)
        data = ctx.data(data)
        ident, token = service.login(data.get("username"), data.get("password"), ctx.client_ip())
        return _signed_in(ident, token)

    @socketio.on("guest")
    @ctx.guarded
    def handle_guest(data=None):
        _throttle("guest", 10)
        data = ctx.data(data)
        ident, token = service.guest_join(data.get("name") or data.get("username"), ctx.client_ip())
        return _signed_in(ident, token)

    @socketio.on("resume")
    @ctx.guarded
    def handle_resume(data=None):
        _throttle("resume", 30)
        ident = service.resume(ctx.data(data).get("token"), ctx.client_ip())
        return _signed_in(ident)

    @socketio.on("logout")
    @ctx.guarded
    def handle_logout(data=None):
        service.logout(ctx.data(data).get("token"))
        service.detach(request.sid)
        return ctx.ok()

    @socketio.on("whoami")
    @ctx.guarded
    def handle_whoami(data=None):
        return ctx.ok(user=service.whoami(ctx.current_identity()))

    @socketio.on("activity")
    @ctx.guarded
    def handle_activity(data=None):
        service.activity(ctx.current_identity().id)
        return ctx.ok()

    @socketio.on("status:set")
    @ctx.guarded
    def handle_status_set(data=None):
        ident = ctx.current_identity()
        status = service.set_status(ident.id, ctx.data(data).get("status"))
        return ctx.ok(status=status)

    @socketio.on("presence:get")
    @ctx.guarded
    def handle_presence_get(data=None):
        return ctx.ok(**service.presence_payload())

    @socketio.on("settings:update")
    @ctx.guarded
    def handle_settings_update(data=None):
        user = service.update_profile(ctx.current_identity(), settings=ctx.data(data).get("settings"))
        return ctx.ok(user=user)

    @socketio.on("mutes:update")
    @ctx.guarded
    def handle_mutes_update(data=None):
        user = service.update_profile(ctx.current_identity(), mutes=ctx.data(data).get("mutes"))
        return ctx.ok(user=user)

    @socketio.on("bio:update")
    @ctx.guarded
    def handle_bio_update(data=None):
        user = service.update_profile(ctx.current_identity(), bio=ctx.data(data).get("bio") or "")
        return ctx.ok(user=user)

    @socketio.on("profile:get")
    @ctx.guarded
    def handle_profile_get(data=None):
        ctx.current_identity()
        return ctx.ok(profile=service.profile(ctx.data(data).get("username")))
