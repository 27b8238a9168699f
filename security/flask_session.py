from flask import request
from flask.sessions import SessionInterface, SessionMixin
from werkzeug.datastructures import CallbackDict

from security.session_guard import SessionGuard, SessionStatus, holds_data


class GuardedSession(CallbackDict, SessionMixin):
    def __init__(self, initial=None, sid=None, status=None, incoming_sid=None):
        def on_update(self):
            self.modified = True

        CallbackDict.__init__(self, initial, on_update)
        self.sid = sid
        self.incoming_sid = incoming_sid
        self.status = status
        self.new = status in (SessionStatus.CREATED, SessionStatus.RENEWED)
        self.modified = False
        self.regenerate_requested = False

    def regenerate(self):
        self.regenerate_requested = True


class GuardedSessionInterface(SessionInterface):
    """
    Makes ``flask.session`` a server-side session protected by SessionGuard.

    The id travels only in the session cookie; ids found in the query string
    are ignored. A fresh session is written (and its cookie issued) only once
    it holds data of its own.
    """

    session_class = GuardedSession

    def __init__(self, guard: SessionGuard):
        self.guard = guard

    def open_session(self, app, request):
        cookie_name = self.guard.config.cookie_name
        if cookie_name in request.args:
            self.guard.events.fire("session.url_id_rejected", {"ip": request.remote_addr})

        incoming = request.cookies.get(cookie_name)
        state = self.guard.resume(incoming, request.headers, remote_addr=request.remote_addr or "")
        return self.session_class(state.data, sid=state.session_id, status=state.status, incoming_sid=incoming)

    def save_session(self, app, session, response):
        response.vary.add("Cookie")
        params = self.guard.cookie_params(secure=request.is_secure)

        if session.new and not holds_data(session):
            # nothing worth storing: no file, no cookie
            if session.incoming_sid:
                response.delete_cookie(**params)
            return

        if not session.new and not self.guard.is_live(session.sid):
            # destroyed by a concurrent request; never bring the id back
            self.guard.events.fire("session.stale_write_dropped", {})
            return

        if session.regenerate_requested:
            session.sid = self.guard.regenerate(session.sid, dict(session))
            session.regenerate_requested = False
        else:
            self.guard.save(session.sid, dict(session), create=session.new)

        if session.sid != session.incoming_sid:
            response.set_cookie(value=session.sid, **params)
