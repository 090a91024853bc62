"""Socket.IO handlers: friends and blocks."""


def register(socketio, settings, ctx):
    """Register Socket.IO event handlers for this module."""
    service = ctx.service

    def _target(data):
        return ctx.data(data).get("username")

    @socketio.on("friend:request")
    @ctx.guarded
    def handle_friend_request(data=None):
        status = service.friend_request(ctx.current_identity(), _target(data))
        return ctx.ok(status=status)

    @socketio.on("friend:accept")
    @ctx.guarded
    def handle_friend_accept(data=None):
        ident = ctx.current_identity()
        service.friend_accept(ident, _target(data))
        return ctx.ok(friends=service.friends(ident))

    @socketio.on("friend:decline")
    @ctx.guarded
    def handle_friend_decline(data=None):
        ident = ctx.current_identity()
        service.friend_decline(ident, _target(data))
        return ctx.ok(friends=service.friends(ident))

    @socketio.on("friend:remove")
    @ctx.guarded
    def handle_friend_remove(data=None):
        ident = ctx.current_identity()
        service.friend_remove(ident, _target(data))
        return ctx.ok(friends=service.friends(ident))

    @socketio.on("friends:list")
    @ctx.guarded
    def handle_friends_list(data=None):
        return ctx.ok(friends=service.friends(ctx.current_identity()))

    @socketio.on("block")
    @ctx.guarded
    def handle_block(data=None):
        added = service.block(ctx.current_identity(), _target(data))
        return ctx.ok(changed=added)

    @socketio.on("unblock")
    @ctx.guarded
    def handle_unblock(data=None):
        removed = service.unblock(ctx.current_identity(), _target(data))
        return ctx.ok(changed=removed)

    @socketio.on("blocked:list")
    @ctx.guarded
    def handle_blocked_list(data=None):
        return ctx.ok(blocked=service.blocked_list(ctx.current_identity()))
