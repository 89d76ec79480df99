import atexit
import logging
from concurrent.futures import TimeoutError as DispatchTimeout

from flask import Blueprint, Flask, current_app, jsonify, request, session

from auto_resolver import WrongClassificationAutoResolver
from bin_lease import BinLeaseManager
from datastore import DataStoreError, create_datastore
from models import ADMIN_ROLE, USERS
from recycling_session import SessionNotFoundError, SessionRegistry, SessionStateError
from scheduler import Scheduler
from settings import Config

logger = logging.getLogger(__name__)

recycling = Blueprint('recycling', __name__)


class RecyclingServices:
    """Everything the routes need, owned by one Flask app."""

    def __init__(self, store, scheduler, registry, resolver=None):
        self.store = store
        self.scheduler = scheduler
        self.registry = registry
        self.resolver = resolver


def create_app(config_object=Config, store=None, scheduler=None):
    application = Flask(__name__)
    application.config.from_object(config_object)
    logging.basicConfig(
        level=application.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )

    if store is None:
        store = create_datastore(application.config)
    if scheduler is None:
        scheduler = Scheduler()
    scheduler.start()

    leases = BinLeaseManager(store, scheduler.now, stale_after=application.config['STALE_LEASE_SECONDS'])
    registry = SessionRegistry(
        store, scheduler, leases,
        timeout_seconds=application.config['SESSION_TIMEOUT_SECONDS'],
        heartbeat_seconds=application.config['HEARTBEAT_SECONDS'],
    )
    resolver = None
    if application.config['AUTO_RESOLVER_ENABLED']:
        resolver = WrongClassificationAutoResolver(store, scheduler)
        scheduler.call(resolver.start)

    application.extensions['recycling'] = RecyclingServices(store, scheduler, registry, resolver)
    application.register_blueprint(recycling)
    application.register_error_handler(404, page_not_found)
    return application


def shutdown_app(application):
    services = application.extensions.get('recycling')
    if services is None:
        return
    if services.resolver is not None:
        services.scheduler.call(services.resolver.stop)
    services.scheduler.call(services.registry.close_all)
    services.scheduler.stop()
    services.store.close()
    del application.extensions['recycling']


def _services():
    return current_app.extensions['recycling']


def _dispatch(fn, *args):
    services = _services()
    return services.scheduler.call(fn, *args, timeout=current_app.config['CALL_TIMEOUT_SECONDS'])


def _run_session_call(fn, *args):
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401
    try:
        view = _dispatch(fn, session['user_id'], *args)
    except SessionNotFoundError as e:
        return jsonify({'error': str(e)}), 404
    except SessionStateError as e:
        return jsonify({'error': str(e)}), 409
    except DispatchTimeout:
        logger.error("Session call %s timed out", getattr(fn, '__name__', fn))
        return jsonify({'error': 'Session is busy, please try again'}), 503
    return jsonify(view)


def _session_action(bin_id, action, *args):
    return _run_session_call(_services().registry.perform, bin_id, action, *args)


def _waste_type_from_request():
    data = request.get_json(silent=True) or {}
    return data.get('waste_type')


# --- Recycling session phases ---------------------------------------------

@recycling.route("/recycling-session/<bin_id>", methods=["POST"])
def open_session(bin_id):
    return _run_session_call(_services().registry.open, bin_id)


@recycling.route("/recycling-session/<bin_id>", methods=["GET"])
def session_state(bin_id):
    return _run_session_call(_services().registry.view, bin_id)


@recycling.route("/recycling-session/<bin_id>/retry", methods=["POST"])
def try_again(bin_id):
    return _session_action(bin_id, 'retry')


@recycling.route("/recycling-session/<bin_id>/back", methods=["POST"])
def go_back(bin_id):
    return _session_action(bin_id, 'go_back')


@recycling.route("/recycling-session/<bin_id>/finish", methods=["POST"])
def finish_session(bin_id):
    return _session_action(bin_id, 'finish')


@recycling.route("/recycling-session/<bin_id>/award", methods=["POST"])
def award_points(bin_id):
    return _session_action(bin_id, 'award')


@recycling.route("/recycling-session/<bin_id>/continue", methods=["POST"])
def continue_session(bin_id):
    return _session_action(bin_id, 'continue_session')


@recycling.route("/recycling-session/<bin_id>/leave", methods=["POST"])
def leave_session(bin_id):
    # Sent on page hide / unload; an already finished session is not an error
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401
    try:
        view = _dispatch(_services().registry.leave, session['user_id'], bin_id)
    except DispatchTimeout:
        logger.error("Leaving session on bin %s timed out", bin_id)
        return jsonify({'error': 'Session is busy, please try again'}), 503
    return jsonify(view or {'bin_id': bin_id, 'phase': 'closed'})


@recycling.route("/recycling-session/<bin_id>/demo", methods=["POST"])
def admin_demo(bin_id):
    if 'user_id' not in session:
        return jsonify({'error': 'Not authenticated'}), 401
    try:
        user = _dispatch(_services().store.find_by_key, USERS, session['user_id'], 'auth_uid')
    except DataStoreError as e:
        logger.error("Error looking up user %s: %s", session['user_id'], e)
        return jsonify({'error': f"Error checking admin access: {e}"}), 503
    except DispatchTimeout:
        logger.error("Admin check for bin %s timed out", bin_id)
        return jsonify({'error': 'Session is busy, please try again'}), 503
    if not user or user.get('role') != ADMIN_ROLE:
        return jsonify({'error': 'Admin only'}), 403
    waste_type = _waste_type_from_request()
    if not waste_type:
        return jsonify({'error': 'Please select a bottle type first'}), 400
    return _session_action(bin_id, 'receive_identification', waste_type)


@recycling.route("/recycling-session/<bin_id>/confirm", methods=["POST"])
def confirm_identification(bin_id):
    return _session_action(bin_id, 'confirm')


@recycling.route("/recycling-session/<bin_id>/dispute", methods=["POST"])
def dispute_identification(bin_id):
    return _session_action(bin_id, 'dispute')


@recycling.route("/recycling-session/<bin_id>/correct", methods=["POST"])
def submit_correction(bin_id):
    waste_type = _waste_type_from_request()
    if not waste_type:
        return jsonify({'error': 'No waste type selected'}), 400
    return _session_action(bin_id, 'submit_correction', waste_type)


@recycling.route("/recycling-session/<bin_id>/wrong-classification", methods=["POST"])
def answer_wrong_classification(bin_id):
    waste_type = _waste_type_from_request()
    if not waste_type:
        return jsonify({'error': 'No waste type selected'}), 400
    return _session_action(bin_id, 'answer_wrong_classification', waste_type)


# here is route of 404 means page not found error
def page_not_found(e):
    return jsonify({'error': 'Not found'}), 404


application = create_app()
atexit.register(shutdown_app, application)

if __name__ == "__main__":
    application.run()
