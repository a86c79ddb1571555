from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import json
import click
from config import Config

db = SQLAlchemy()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

SAMPLE_QUESTIONS = [
    {'category': 'geography', 'statement': 'What is the capital of Australia?',
     'options': ['Sydney', 'Canberra', 'Melbourne', 'Perth'], 'correct_index': 1},
    {'category': 'science', 'statement': 'Which planet is known as the Red Planet?',
     'options': ['Venus', 'Jupiter', 'Mars', 'Mercury'], 'correct_index': 2},
    {'category': 'history', 'statement': 'In which year did the Berlin Wall fall?',
     'options': ['1987', '1989', '1991', '1993'], 'correct_index': 1},
    {'category': 'science', 'statement': 'What is the chemical symbol for gold?',
     'options': ['Au', 'Ag', 'Gd', 'Go'], 'correct_index': 0},
    {'category': 'sports', 'statement': 'How many players does a football (soccer) team field?',
     'options': ['9', '10', '11', '12'], 'correct_index': 2},
]


def create_app(config_class=Config, **engine_overrides):
    """Build the Flask app.

    ``engine_overrides`` replace the default collaborators of the game engine
    (``timers``, ``questions``, ``names``, ``notifier``, ``clock``).
    """
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from trivia.main import main
    flask_app.register_blueprint(main)

    from trivia.api.sessions import sessions
    flask_app.register_blueprint(sessions, url_prefix='/api/sessions')

    from trivia.services import init_engine
    init_engine(flask_app, **engine_overrides)

    from trivia.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    from trivia.auth import load_identity_from_request
    login_manager.request_loader(load_identity_from_request)

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from trivia.models import Question
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            for item in SAMPLE_QUESTIONS:
                db.session.add(Question.from_dict(item))

            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('seed-questions')
    @click.argument('path', type=click.Path(exists=True, dir_okay=False))
    def seed_questions_command(path):
        """Bulk-loads questions from a JSON array."""
        from trivia.models import Question
        with open(path, encoding='utf-8') as fh:
            items = json.load(fh)
        if not isinstance(items, list):
            raise click.ClickException('Expected a JSON array of questions')
        invalid = [i for i, item in enumerate(items) if not Question.is_valid_payload(item)]
        if invalid:
            raise click.ClickException(f'Malformed questions at positions {invalid}')
        with flask_app.app_context():
            for item in items:
                db.session.add(Question.from_dict(item))
            db.session.commit()
        print(f'Inserted {len(items)} questions')

    @click.command('issue-token')
    @click.argument('identity_id')
    @click.argument('name')
    def issue_token_command(identity_id, name):
        """Prints a development credential for the socket gate."""
        from trivia.auth import issue_token
        with flask_app.app_context():
            print(issue_token(identity_id, name))

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(seed_questions_command)
    flask_app.cli.add_command(issue_token_command)

    return flask_app
