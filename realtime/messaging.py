"""Socket.IO handlers: send/edit/delete, history, DMs, reports and the inbox."""


def register(socketio, settings, ctx):
    """Register Socket.IO event handlers for this module."""
    service = ctx.service

    @socketio.on("send")
    @ctx.guarded
    def handle_send(data=None):
        data = ctx.data(data)
        ident = ctx.current_identity()
        msg, created = service.send(
            ident,
            data.get("thread_id") or data.get("thread"),
            data.get("content", data.get("text")),
            data.get("client_id"),
        )
        return ctx.ok(message=msg.to_public(), duplicate=not created)

    @socketio.on("edit")
    @ctx.guarded
    def handle_edit(data=None):
        data = ctx.data(data)
        msg = service.edit(ctx.current_identity(), data.get("message_id"), data.get("content", data.get("text")))
        return ctx.ok(message=msg.to_public())

    @socketio.on("delete")
    @ctx.guarded
    def handle_delete(data=None):
        msg = service.delete(ctx.current_identity(), ctx.data(data).get("message_id"))
        return ctx.ok(message=msg.to_public())

    @socketio.on("history")
    @ctx.guarded
    def handle_history(data=None):
        data = ctx.data(data)
        thread_id = data.get("thread_id") or data.get("thread")
        messages = service.history(ctx.current_identity(), thread_id, data.get("limit"))
        return ctx.ok(thread_id=thread_id, messages=messages)

    @socketio.on("dm:open")
    @ctx.guarded
    def handle_dm_open(data=None):
        data = ctx.data(data)
        ident = ctx.current_identity()
        thread_id = service.open_dm(ident, data.get("username"))
        return ctx.ok(thread_id=thread_id, messages=service.history(ident, thread_id, data.get("limit")))

    @socketio.on("report")
    @ctx.guarded
    def handle_report(data=None):
        data = ctx.data(data)
        report = service.report(ctx.current_identity(), data.get("message_id"), data.get("reason"))
        return ctx.ok(report=report)

    @socketio.on("inbox:get")
    @ctx.guarded
    def handle_inbox_get(data=None):
        return ctx.ok(inbox=service.inbox(ctx.current_identity().id))

    @socketio.on("inbox:clearMentions")
    @ctx.guarded
    def handle_inbox_clear_mentions(data=None):
        return ctx.ok(inbox=service.clear_mentions(ctx.current_identity()))
