from flask_socketio import join_room, emit
from flask_login import current_user
from towngames import socketio


def user_room(user_id) -> str:
    return f"user:{user_id}"


def handle_connect():
    # Session updates are pushed per user; anonymous sockets get nothing
    if current_user.is_authenticated:
        room = user_room(current_user.id)
        join_room(room)
        emit('connected', {'message': 'Connected to /ws', 'room': room})
    else:
        emit('connected', {'message': 'Connected to /ws', 'room': None})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
