"""Socket.IO handlers: invite-gated groups."""


def register(socketio, settings, ctx):
    """Register Socket.IO event handlers for this module."""
    service = ctx.service

    def _gid(data):
        return str(data.get("group_id") or data.get("thread_id") or "")

    @socketio.on("group:create")
    @ctx.guarded
    def handle_group_create(data=None):
        data = ctx.data(data)
        group = service.create_group(ctx.current_identity(), data.get("name"), data.get("invitees") or [])
        return ctx.ok(group=group)

    @socketio.on("group:invite")
    @ctx.guarded
    def handle_group_invite(data=None):
        data = ctx.data(data)
        return ctx.ok(group=service.invite(ctx.current_identity(), _gid(data), data.get("username")))

    @socketio.on("group:accept")
    @ctx.guarded
    def handle_group_accept(data=None):
        group = service.accept_invite(ctx.current_identity(), _gid(ctx.data(data)))
        return ctx.ok(group=group)

    @socketio.on("group:decline")
    @ctx.guarded
    def handle_group_decline(data=None):
        service.decline_invite(ctx.current_identity(), _gid(ctx.data(data)))
        return ctx.ok()

    @socketio.on("group:revoke")
    @ctx.guarded
    def handle_group_revoke(data=None):
        data = ctx.data(data)
        return ctx.ok(group=service.revoke_invite(ctx.current_identity(), _gid(data), data.get("username")))

    @socketio.on("group:remove")
    @ctx.guarded
    def handle_group_remove(data=None):
        data = ctx.data(data)
        return ctx.ok(group=service.remove_member(ctx.current_identity(), _gid(data), data.get("username")))

    @socketio.on("group:leave")
    @ctx.guarded
    def handle_group_leave(data=None):
        return ctx.ok(**service.leave_group(ctx.current_identity(), _gid(ctx.data(data))))

    @socketio.on("group:rename")
    @ctx.guarded
    def handle_group_rename(data=None):
        data = ctx.data(data)
        return ctx.ok(group=service.rename_group(ctx.current_identity(), _gid(data), data.get("name")))

    @socketio.on("group:transfer")
    @ctx.guarded
    def handle_group_transfer(data=None):
        data = ctx.data(data)
        return ctx.ok(group=service.transfer_group(ctx.current_identity(), _gid(data), data.get("username")))

    @socketio.on("group:delete")
    @ctx.guarded
    def handle_group_delete(data=None):
        return ctx.ok(**service.delete_group(ctx.current_identity(), _gid(ctx.data(data))))

    @socketio.on("groups:list")
    @ctx.guarded
    def handle_groups_list(data=None):
        return ctx.ok(**service.list_groups(ctx.current_identity()))
