import time
from typing import Set

from towngames.models import ChallengeSession, SessionStatus, utcnow


_scheduled_session_ids: Set[str] = set()


def schedule_expiry(app, session_id: str) -> None:
    """Schedule the server-side expiry of a timed session.

    - No-ops in TESTING mode unless ENABLE_SCHEDULER_IN_TESTS is set
    - Ensures a single timer per session
    - Fires after deadline + grace; aborts the session only if it is still unfinished
    """
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return

    from .orchestrator import expiry_cutoff

    with app.app_context():
        session = ChallengeSession.query.filter_by(id=session_id).first()
        if not session or session.status != SessionStatus.IN_PROGRESS or not session.time_limit_seconds:
            return
        if session_id in _scheduled_session_ids:
            app.logger.info(f"[timer-skip] session={session_id} already scheduled")
            return
        _scheduled_session_ids.add(session_id)
        delay = max(0, int((expiry_cutoff(session) - utcnow()).total_seconds()) + 1)
        app.logger.info(f"[timer-set] session={session_id} delay={delay}s deadline={session.deadline.isoformat()}")

    def _worker(sid: str, delay: int):
        hb = int(app.config.get('TIMER_HEARTBEAT_SEC', 0) or 0)
        if hb > 0:
            slept = 0
            while slept < delay:
                step = min(hb, delay - slept)
                time.sleep(step)
                slept += step
                app.logger.info(f"[timer-heartbeat] session={sid} remaining={max(0, delay - slept)}s")
        else:
            time.sleep(delay)

        from .orchestrator import expire_session

        with app.app_context():
            _scheduled_session_ids.discard(sid)
            try:
                expired = expire_session(sid)
            except Exception as exc:
                app.logger.error(f"[timer-error] session={sid} error={exc}")
                return
            app.logger.info(f"[timer-fire] session={sid} expired={expired}")

    if app.config.get('TESTING'):
        _worker(session_id, delay)
    else:
        from towngames import socketio
        socketio.start_background_task(_worker, session_id, delay)
