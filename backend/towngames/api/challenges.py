from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from sqlalchemy.exc import SQLAlchemyError

from towngames import db
from towngames.services.challenges import orchestrator
from towngames.services.challenges.errors import ChallengeError, OutOfRange, UpstreamFailure


challenges = Blueprint('challenges', __name__)


@challenges.errorhandler(ChallengeError)
def handle_challenge_error(exc: ChallengeError):
    return jsonify(exc.to_dict()), exc.status_code


@challenges.errorhandler(SQLAlchemyError)
def handle_store_error(exc: SQLAlchemyError):
    db.session.rollback()
    current_app.logger.error(f"[store-error] path={request.path} error={exc.__class__.__name__}: {exc}")
    failure = UpstreamFailure()
    return jsonify(failure.to_dict()), failure.status_code


def _body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise OutOfRange('JSON body required')
    return data


def _required_str(data: dict, field: str) -> str:
    value = data.get(field)
    if not isinstance(value, str) or not value:
        raise OutOfRange(f'{field} is required')
    return value


@challenges.route('/types', methods=['GET'])
@login_required
def list_types():
    catalog = orchestrator.get_engine().catalog
    return jsonify({'challenge_types': [catalog.types[key].to_dict() for key in sorted(catalog.types)]})


@challenges.route('/start', methods=['POST'])
@login_required
def start():
    data = _body()
    result = orchestrator.start_challenge(
        current_user,
        _required_str(data, 'challenge_type'),
        _required_str(data, 'difficulty'),
    )
    return jsonify(result), 201


@challenges.route('/answer', methods=['POST'])
@login_required
def answer():
    data = _body()
    if 'value' not in data:
        raise OutOfRange('value is required')
    result = orchestrator.submit_answer(
        current_user,
        _required_str(data, 'session_id'),
        data.get('problem_index'),
        data['value'],
    )
    return jsonify(result)


@challenges.route('/finish', methods=['POST'])
@login_required
def finish():
    data = _body()
    return jsonify(orchestrator.finish_challenge(current_user, _required_str(data, 'session_id')))


@challenges.route('/status', methods=['GET'])
@login_required
def status():
    challenge_type = request.args.get('challenge_type')
    if not challenge_type:
        raise OutOfRange('challenge_type is required')
    return jsonify(orchestrator.challenge_status(current_user, challenge_type))


@challenges.route('/sessions/<session_id>', methods=['GET'])
@login_required
def session_detail(session_id):
    return jsonify(orchestrator.session_view(current_user, session_id))
