from towngames import socketio

from conftest import issued_answers


def test_socket_connect_and_ping(sio_client):
    # Ensure we are connected to /ws
    if not sio_client.is_connected('/ws'):
        sio_client.connect(namespace='/ws')
    assert sio_client.is_connected('/ws')

    received = sio_client.get_received('/ws')
    connected = [pkt for pkt in received if pkt['name'] == 'connected']
    assert connected and connected[0]['args'][0]['room'] is None

    sio_client.emit('ping', {'n': 1}, namespace='/ws')
    received = sio_client.get_received('/ws')
    assert any(pkt['name'] == 'pong' and pkt['args'][0] == {'n': 1} for pkt in received)


def _anonymous_socket(flask_app):
    # A fresh app context keeps the logged-in user cached on `g` out of the handshake
    with flask_app.app_context():
        return socketio.test_client(flask_app, flask_test_client=flask_app.test_client(), namespace='/ws')


def test_finish_pushes_session_update_to_owner(flask_app, logged_in, user):
    owner_socket = socketio.test_client(flask_app, flask_test_client=logged_in, namespace='/ws')
    stranger_socket = _anonymous_socket(flask_app)
    try:
        received = owner_socket.get_received('/ws')
        assert received[0]['args'][0]['room'] == f'user:{user.id}'
        greeting = [pkt for pkt in stranger_socket.get_received('/ws') if pkt['name'] == 'connected']
        assert greeting and greeting[0]['args'][0]['room'] is None

        session_id = logged_in.post(
            '/api/challenge/start', json={'challenge_type': 'drill', 'difficulty': 'easy'}
        ).get_json()['session_id']
        answers = issued_answers(session_id)
        logged_in.post('/api/challenge/answer', json={'session_id': session_id, 'problem_index': 0, 'value': answers[0]})
        logged_in.post('/api/challenge/finish', json={'session_id': session_id})

        updates = [pkt for pkt in owner_socket.get_received('/ws') if pkt['name'] == 'session_update']
        assert len(updates) == 1
        payload = updates[0]['args'][0]
        assert payload['session_id'] == session_id
        assert payload['status'] == 'completed'
        assert payload['result']['score'] == 1

        assert not [pkt for pkt in stranger_socket.get_received('/ws') if pkt['name'] == 'session_update']
    finally:
        owner_socket.disconnect(namespace='/ws')
        stranger_socket.disconnect(namespace='/ws')
