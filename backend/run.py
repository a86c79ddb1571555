from trivia import create_app, socketio
from trivia.services import get_engine

app = create_app()

if __name__ == '__main__':
    # Pick up sessions that were running when the process last stopped
    with app.app_context():
        get_engine().lifecycle.recover_sessions()
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
