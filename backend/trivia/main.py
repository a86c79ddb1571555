from flask import Blueprint, jsonify
from trivia import db

main = Blueprint('main', __name__)

@main.route('/')
def index():
    return jsonify({'message': 'Welcome to the trivia game server!'})

@main.route('/health')
def health():
    try:
        db.session.execute(db.text('SELECT 1'))
    except Exception as exc:
        return jsonify({'status': 'degraded', 'database': str(exc)}), 503
    return jsonify({'status': 'ok'})
