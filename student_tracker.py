"""
Student Performance Tracker

Flask front end for the student performance REST API: login and registration,
a performance overview of every student, an add-student form, and a detail
page with each student's score history and an inline add-score form.

Only the bearer token is persisted (in the signed session cookie); student
and score data is cached in memory per browser session.
"""

import asyncio
import logging
import os
from datetime import timedelta

from dotenv import load_dotenv
from flask import Flask, render_template, request, redirect, url_for, session, flash, jsonify, g
from flask_wtf.csrf import CSRFProtect, CSRFError

from tracker_api import DEFAULT_API_BASE, ApiClient, ApiError, SessionTokenStorage
from tracker_state import AuthenticationError, StateRegistry, TrackerController, ValidationError

load_dotenv()

app = Flask(__name__, template_folder='frontend/templates', static_folder='static')
ALLOW_INSECURE_DEFAULTS = os.environ.get('ALLOW_INSECURE_DEFAULTS', '').strip().lower() in ('1', 'true', 'yes')
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    if ALLOW_INSECURE_DEFAULTS:
        # Explicitly opt-in fallback for local/dev only.
        secret_key = 'dev-secret-key-change-me'
    else:
        raise RuntimeError("SECRET_KEY is required in production. Set SECRET_KEY or enable ALLOW_INSECURE_DEFAULTS for local development.")
if not ALLOW_INSECURE_DEFAULTS and len(secret_key) < 32:
    raise RuntimeError("SECRET_KEY is too short. Use at least 32 characters in production.")
app.secret_key = secret_key
app.config['WTF_CSRF_TIME_LIMIT'] = None
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(days=int(os.environ.get('SESSION_LIFETIME_DAYS', '7')))
app.config['API_BASE_URL'] = os.environ.get('API_BASE_URL', '').strip() or DEFAULT_API_BASE
app.config['API_TRANSPORT'] = None

# Initialize CSRF Protection
csrf = CSRFProtect(app)

# Set up logging
logging.basicConfig(filename=os.environ.get('LOG_FILE', 'app.log'), level=logging.INFO,
                    format='%(asctime)s - %(levelname)s - %(message)s')
if ALLOW_INSECURE_DEFAULTS:
    logging.warning("ALLOW_INSECURE_DEFAULTS is enabled. Development-only fallbacks may be active.")

STATE_KEY = 'sid'
REFRESHED_KEY = 'refreshed'
PUBLIC_ENDPOINTS = {'static', 'health', 'login', 'register'}

registry = StateRegistry(max_entries=int(os.environ.get('MAX_TRACKED_SESSIONS', '500')))
token_storage = SessionTokenStorage()


def run(coro):
    """Drive a controller coroutine to completion from a request handler."""
    return asyncio.run(coro)


def get_controller():
    """Controller bound to the current browser session's state."""
    if 'controller' in g:
        return g.controller
    state = registry.get(session.get(STATE_KEY))
    if state is None:
        key, state = registry.create()
        session[STATE_KEY] = key
    api = ApiClient(app.config['API_BASE_URL'], token_storage, transport=app.config.get('API_TRANSPORT'))
    g.controller = TrackerController(state, api, token_storage)
    return g.controller


@app.context_processor
def inject_session_flags():
    return {'logged_in': bool(token_storage.get_token())}


# ==================== GATING ====================

@app.before_request
def require_token():
    """Without a token only the auth views are reachable."""
    endpoint = request.endpoint or ''
    if endpoint in {'static', 'health'}:
        return None

    controller = get_controller()
    if not token_storage.get_token():
        if controller.state.token:
            # Token is gone (expired cookie); cached data must not outlive it.
            controller.state.reset()
        if endpoint in PUBLIC_ENDPOINTS:
            return None
        return redirect(url_for('login'))

    if endpoint == 'logout':
        return None
    run(controller.start())
    if endpoint in {'login', 'register'}:
        return redirect(url_for('overview'))
    return None


@app.errorhandler(CSRFError)
def csrf_error(error):
    """Handle CSRF token errors."""
    if token_storage.get_token():
        flash('Form token expired/invalid. Please retry your last action.', 'error')
        return redirect(request.referrer or url_for('overview'))
    flash('Your session has expired. Please login again.', 'error')
    return redirect(url_for('login'))


@app.errorhandler(404)
@app.errorhandler(405)
def unknown_route(error):
    return redirect(url_for('overview'))


# ==================== AUTH ROUTES ====================

@app.route('/login', methods=['GET', 'POST'])
def login():
    controller = get_controller()
    if request.method == 'POST':
        email = request.form.get('email', '').strip()
        password = request.form.get('password', '')
        try:
            run(controller.login(email, password))
        except AuthenticationError as exc:
            logging.info("Failed login for %s", email)
            flash(str(exc), 'error')
            return render_template('shared/auth.html', auth_mode='login', login_email=email)
        return redirect(url_for('overview'))

    mode = request.args.get('mode')
    if mode:
        controller.set_auth_mode(mode)
    return render_template('shared/auth.html', auth_mode=controller.state.auth_mode)


@app.route('/register', methods=['GET', 'POST'])
def register():
    controller = get_controller()
    if request.method == 'GET':
        return redirect(url_for('login', mode='register'))

    name = request.form.get('name', '').strip()
    email = request.form.get('email', '').strip()
    password = request.form.get('password', '')
    try:
        run(controller.register(name, email, password))
    except AuthenticationError as exc:
        flash(str(exc), 'error')
        controller.set_auth_mode('register')
        return render_template('shared/auth.html', auth_mode='register', register_name=name, register_email=email)
    flash('Registered! Please login.', 'success')
    return redirect(url_for('login', mode='login'))


@app.route('/logout')
def logout():
    get_controller().logout()
    return redirect(url_for('login'))


# ==================== STUDENT ROUTES ====================

@app.route('/')
def overview():
    state = get_controller().state
    return render_template('students/overview.html', cards=state.overview_cards(), loading=state.loading)


@app.route('/add', methods=['GET', 'POST'])
def add_student():
    controller = get_controller()
    if request.method == 'POST':
        name = request.form.get('name', '').strip()
        roll_no = request.form.get('rollNo', '').strip()
        class_name = request.form.get('className', '').strip()
        try:
            run(controller.add_student(name, roll_no, class_name))
        except ValidationError as exc:
            flash(str(exc), 'error')
        except ApiError as exc:
            logging.error("Error adding student %s: %s", name, exc)
            flash('Unable to save student. Please try again.', 'error')
        else:
            flash(f'Student {name} saved.', 'success')
        return redirect(url_for('add_student'))

    return render_template('students/add.html', draft=controller.state.student_draft)


@app.route('/students/<student_id>')
def student_detail(student_id):
    controller = get_controller()
    # An add-score redirect has already refreshed this entry.
    refreshed = session.pop(REFRESHED_KEY, None) == student_id
    student = run(controller.view_student(student_id, refresh=not refreshed))
    if student is None:
        return render_template('students/not_found.html'), 404

    state = controller.state
    return render_template(
        'students/detail.html',
        student=student,
        student_id=student_id,
        scores=state.scores_for(student_id),
        draft=state.score_draft,
    )


@app.route('/students/<student_id>/scores', methods=['POST'])
def add_score(student_id):
    controller = get_controller()
    subject = request.form.get('subject', '').strip()
    marks = request.form.get('marks', '').strip()
    try:
        run(controller.add_performance(student_id, subject, marks))
    except ValidationError as exc:
        flash(str(exc), 'error')
    except ApiError as exc:
        logging.error("Error adding score for student %s: %s", student_id, exc)
        flash('Unable to save score. Please try again.', 'error')
    else:
        session[REFRESHED_KEY] = student_id
    return redirect(url_for('student_detail', student_id=student_id))


@app.route('/students/<student_id>/delete', methods=['POST'])
def delete_student(student_id):
    try:
        run(get_controller().delete_student(student_id))
    except ApiError as exc:
        logging.error("Error deleting student %s: %s", student_id, exc)
        flash('Unable to delete student. Please try again.', 'error')
    return redirect(url_for('overview'))


@app.route('/health')
def health():
    return jsonify({'status': 'ok'})


if __name__ == '__main__':
    port = int(os.environ.get('PORT', 5000))
    debug = os.environ.get('FLASK_DEBUG', '0').strip().lower() in ('1', 'true', 'yes')
    app.run(host='0.0.0.0', port=port, debug=debug)
