from flask import Flask, request, jsonify, session, g, current_app
import os
from flask_session import Session
from datetime import timedelta
from apscheduler.schedulers.background import BackgroundScheduler
from flask_cors import CORS
import atexit
import logging
import functools
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException
from dotenv import load_dotenv
import time

from errors import LibraryError, Unauthorized
from models import db, User, utcnow
from permissions import SELF_REGISTRATION_ROLES, can_act_on, check_access, is_allowed
from store import LibraryStore
import validation

load_dotenv()

# Configure logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'DEBUG').upper(),
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _env_flag(name, default):
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


def load_config():
    database_url = os.environ.get('DATABASE_URL', 'sqlite://')
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    return {
        'SQLALCHEMY_DATABASE_URI': database_url,
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'SECRET_KEY': os.environ.get('SECRET_KEY', 'dev-secret-key-change-me'),
        'SESSION_TYPE': os.environ.get('SESSION_TYPE', 'sqlalchemy'),
        'SESSION_PERMANENT': False,
        'SESSION_COOKIE_SECURE': _env_flag('SESSION_COOKIE_SECURE', 'False'),
        'SESSION_COOKIE_HTTPONLY': True,
        'SESSION_COOKIE_SAMESITE': 'Lax',
        'CORS_ORIGINS': os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(','),
        'SEED_SAMPLE_BOOKS': _env_flag('SEED_SAMPLE_BOOKS', 'True'),
        'BCRYPT_ROUNDS': int(os.environ.get('BCRYPT_ROUNDS', '12')),
        'SESSION_PURGE_INTERVAL_HOURS': int(os.environ.get('SESSION_PURGE_INTERVAL_HOURS', '24')),
        'DEFAULT_LOAN_DAYS': int(os.environ.get('DEFAULT_LOAN_DAYS', '7')),
        'ADMIN_USERNAME': os.environ.get('ADMIN_USERNAME'),
        'ADMIN_PASSWORD': os.environ.get('ADMIN_PASSWORD'),
    }


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.update(load_config())
    if test_config:
        app.config.update(test_config)

    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('postgresql://'):
        app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
            'connect_args': {'connect_timeout': 10},
            'pool_size': 5,
            'max_overflow': 10,
            'pool_timeout': 30,
        }
    if app.config['SESSION_TYPE'] == 'sqlalchemy':
        app.config['SESSION_SQLALCHEMY'] = db

    CORS(app, supports_credentials=True, origins=app.config['CORS_ORIGINS'])

    try:
        db.init_app(app)
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise

    Session(app)

    store = LibraryStore(db, bcrypt_rounds=app.config['BCRYPT_ROUNDS'])
    app.extensions['library_store'] = store
    with app.app_context():
        store.init(seed_books=app.config['SEED_SAMPLE_BOOKS'])
        _ensure_admin(app, store)
        logger.debug(f"Database connected: {app.config['SQLALCHEMY_DATABASE_URI']}")

    interval = app.config['SESSION_PURGE_INTERVAL_HOURS']
    if interval > 0 and app.config['SESSION_TYPE'] == 'sqlalchemy':
        scheduler = BackgroundScheduler()
        scheduler.add_job(purge_expired_sessions, 'interval', hours=interval, args=[app])
        scheduler.start()
        app.extensions['session_scheduler'] = scheduler
        atexit.register(lambda: scheduler.shutdown(wait=False))

    register_routes(app)
    register_error_handlers(app)
    return app


def _ensure_admin(app, store):
    username = app.config.get('ADMIN_USERNAME')
    password = app.config.get('ADMIN_PASSWORD')
    if not username or not password or store.get_user_by_username(username):
        return
    store.create_user(
        username=username,
        password=password,
        role='admin',
        name='Administrator',
        email=f'{username}@library.local'
    )
    logger.info(f"Admin user created: username='{username}'")


def current_store():
    return current_app.extensions['library_store']


# Expired server-side sessions stay in the table until purged
def purge_expired_sessions(app):
    with app.app_context():
        model = app.session_interface.sql_session_model
        try:
            removed = db.session.query(model).filter(
                model.expiry <= utcnow()
            ).delete(synchronize_session=False)
            db.session.commit()
        except Exception as e:
            logger.error(f"Session purge failed: {str(e)}")
            db.session.rollback()
            raise
        logger.debug(f"Session purge completed: {removed} sessions removed")
        return removed


# Authentication decorator
def login_required(action=None):
    def decorator(f):
        @functools.wraps(f)
        def wrapped(*args, **kwargs):
            user = None
            if 'user_id' in session:
                user = db.session.get(User, session['user_id'])
                if user is None:
                    logger.warning("Unauthorized access: Invalid user")
                    session.pop('user_id', None)
            check_access(user, action)
            g.user = user
            return f(*args, **kwargs)
        return wrapped
    return decorator


# Retry decorator
def retry_db_operation(max_attempts=3, delay=1):
    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            attempts = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except OperationalError as e:
                    logger.error(f"Database operation failed: {str(e)}")
                    db.session.rollback()
                    attempts += 1
                    if attempts == max_attempts:
                        raise
                    time.sleep(delay)
                    logger.debug(f"Retrying database operation ({attempts}/{max_attempts})")
        return wrapper
    return decorator


def _json_body():
    return validation.require_payload(request.get_json(silent=True))


def register_routes(app):
    @app.before_request
    def log_request():
        logger.debug(f"Incoming request: {request.method} {request.path}")

    @app.route('/')
    def home():
        return jsonify({"message": "Library Management System Backend"})

    # Auth

    @app.route('/api/register', methods=['POST'])
    @retry_db_operation()
    def register():
        fields = validation.parse_user(_json_body(), allowed_roles=SELF_REGISTRATION_ROLES)
        user = current_store().create_user(**fields)
        session['user_id'] = user.id
        logger.debug(f"User registered: {user.username}")
        return jsonify(user.to_dict()), 201

    @app.route('/api/login', methods=['POST'])
    @retry_db_operation()
    def login():
        credentials = validation.parse_credentials(_json_body())
        user = current_store().authenticate(credentials['username'], credentials['password'])
        if user is None:
            logger.debug(f"Invalid credentials for: {credentials['username']}")
            raise Unauthorized('Invalid credentials')
        session['user_id'] = user.id
        logger.debug(f"Session created for user: {user.username}")
        return jsonify(user.to_dict()), 200

    @app.route('/api/logout', methods=['POST'])
    def logout():
        session.pop('user_id', None)
        logger.debug("User logged out")
        return jsonify({'message': 'Logout successful'}), 200

    @app.route('/api/user', methods=['GET'])
    @login_required()
    def get_current_user():
        return jsonify(g.user.to_dict()), 200

    # Books

    @app.route('/api/books', methods=['GET'])
    @login_required('books:list')
    @retry_db_operation()
    def get_books():
        books = current_store().list_books()
        logger.debug(f"Fetched {len(books)} books")
        return jsonify([b.to_dict() for b in books]), 200

    @app.route('/api/books/<int:book_id>', methods=['GET'])
    @login_required('books:view')
    @retry_db_operation()
    def get_book(book_id):
        return jsonify(current_store().get_book(book_id).to_dict()), 200

    @app.route('/api/books', methods=['POST'])
    @login_required('books:create')
    @retry_db_operation()
    def add_book():
        fields = validation.parse_book(_json_body())
        book = current_store().create_book(**fields)
        return jsonify(book.to_dict()), 201

    @app.route('/api/books/<int:book_id>', methods=['PUT'])
    @login_required('books:update')
    @retry_db_operation()
    def edit_book(book_id):
        fields = validation.parse_book(_json_body(), partial=True)
        book = current_store().update_book(book_id, **fields)
        return jsonify(book.to_dict()), 200

    @app.route('/api/books/<int:book_id>', methods=['DELETE'])
    @login_required('books:delete')
    @retry_db_operation()
    def delete_book(book_id):
        current_store().delete_book(book_id)
        return '', 204

    # Users

    @app.route('/api/users', methods=['GET'])
    @login_required('users:list')
    @retry_db_operation()
    def get_users():
        users = current_store().list_users()
        logger.debug(f"Fetched {len(users)} users")
        return jsonify([u.to_dict() for u in users]), 200

    @app.route('/api/users', methods=['POST'])
    @login_required('users:manage')
    @retry_db_operation()
    def add_user():
        fields = validation.parse_user(_json_body())
        user = current_store().create_user(**fields)
        return jsonify(user.to_dict()), 201

    @app.route('/api/users/<int:user_id>', methods=['PUT'])
    @login_required('users:manage')
    @retry_db_operation()
    def edit_user(user_id):
        fields = validation.parse_user(_json_body(), partial=True)
        user = current_store().update_user(user_id, **fields)
        return jsonify(user.to_dict()), 200

    @app.route('/api/users/<int:user_id>', methods=['DELETE'])
    @login_required('users:manage')
    @retry_db_operation()
    def delete_user(user_id):
        current_store().delete_user(user_id)
        return '', 204

    # Loans

    @app.route('/api/loans', methods=['GET'])
    @login_required('loans:list')
    @retry_db_operation()
    def get_loans():
        loans = current_store().list_loans(caller=g.user)
        logger.debug(f"Fetched {len(loans)} loans for user_id={g.user.id}")
        return jsonify([loan.to_dict() for loan in loans]), 200

    @app.route('/api/loans/<int:loan_id>', methods=['GET'])
    @login_required('loans:view')
    @retry_db_operation()
    def get_loan(loan_id):
        loan = current_store().get_loan(loan_id)
        can_act_on(g.user, loan.user_id, 'loans:view', 'loans:view_all')
        return jsonify(loan.to_dict()), 200

    @app.route('/api/loans', methods=['POST'])
    @login_required('loans:create')
    @retry_db_operation()
    def create_loan():
        fields = validation.parse_new_loan(_json_body())
        user_id = fields.setdefault('user_id', g.user.id)
        if user_id != g.user.id:
            check_access(g.user, 'loans:create_for_others')
        if 'due_date' not in fields:
            start = fields.get('loan_date') or utcnow()
            fields['due_date'] = start + timedelta(days=current_app.config['DEFAULT_LOAN_DAYS'])
        loan = current_store().create_loan(**fields)
        return jsonify(loan.to_dict()), 201

    @app.route('/api/loans/<int:loan_id>', methods=['PUT'])
    @login_required('loans:update')
    @retry_db_operation()
    def edit_loan(loan_id):
        fields = validation.parse_loan_update(_json_body())
        loan = current_store().update_loan(loan_id, **fields)
        return jsonify(loan.to_dict()), 200

    @app.route('/api/loans/<int:loan_id>/return', methods=['POST'])
    @login_required('loans:return')
    @retry_db_operation()
    def return_loan(loan_id):
        store = current_store()
        loan = store.get_loan(loan_id)
        can_act_on(g.user, loan.user_id, 'loans:return', 'loans:return_any')
        fields = validation.parse_return(request.get_json(silent=True))
        loan = store.return_loan(loan_id, **fields)
        return jsonify(loan.to_dict()), 200

    @app.route('/api/dashboard', methods=['GET'])
    @login_required('dashboard:view')
    @retry_db_operation()
    def dashboard():
        store = current_store()
        total_users = None
        if is_allowed('users:list', g.user.role):
            total_users = len(store.list_users())
        return jsonify({
            'totalBooks': len(store.list_books()),
            'activeLoans': len(store.list_loans(caller=g.user, active_only=True)),
            'totalUsers': total_users,
        }), 200


def register_error_handlers(app):
    @app.errorhandler(LibraryError)
    def handle_library_error(error):
        logger.warning(f"{type(error).__name__} on {request.method} {request.path}: {error.message}")
        return jsonify({'error': error.message}), error.status_code

    @app.errorhandler(Exception)
    def handle_error(error):
        if isinstance(error, HTTPException):
            return jsonify({'error': error.description}), error.code
        logger.error(f"Unhandled error: {str(error)}")
        db.session.rollback()
        return jsonify({'error': 'An unexpected error occurred'}), 500


if __name__ == '__main__':
    create_app().run(
        host=os.environ.get('API_HOST', '127.0.0.1'),
        port=int(os.environ.get('API_PORT', '5000'))
    )
