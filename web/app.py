#!/usr/bin/env python3
"""
CBR2PDF Web Interface
A Flask-based web UI for converting a directory of comic archives to PDF
"""

import json
import os
import sys
from pathlib import Path
from threading import Lock, Thread

from flask import Flask, render_template, request, jsonify
from flask_socketio import SocketIO

# Import our existing conversion classes
# Handle both an installed package and local dev (where the module lives in src/)
try:
    from cbr2pdf import (BatchConfig, BatchCoordinator, ConversionEvents, PageSelection,
                         check_dependencies, DEFAULT_QUALITY)
except ImportError:
    sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))
    from cbr2pdf import (BatchConfig, BatchCoordinator, ConversionEvents, PageSelection,
                         check_dependencies, DEFAULT_QUALITY)

app = Flask(__name__, template_folder='templates')
app.config['SECRET_KEY'] = 'cbr2pdf-web-interface-secret-key'
app.config['SETTINGS_FILE'] = os.environ.get(
    'CBR2PDF_SETTINGS',
    os.path.join(os.path.dirname(os.path.abspath(__file__)), 'settings.json')
)

# Initialize SocketIO for real-time updates; only pages served by this app may connect
socketio = SocketIO(app)

DEFAULT_SETTINGS = {
    'last_directory': '',
    'page_selection': PageSelection.KEEP_ALL.value,
}

# State of the batch started from this interface; only one runs at a time
current_batch = {
    'running': False,
    'directory': None,
    'progress': 0,
    'failed': {},
    'thread': None,
}
batch_lock = Lock()


def load_settings():
    """Load remembered settings, falling back to defaults"""
    path = Path(app.config['SETTINGS_FILE'])
    if path.exists():
        try:
            data = json.loads(path.read_text())
            return {**DEFAULT_SETTINGS, **data}
        except (OSError, ValueError) as e:
            print(f"Warning: Could not read settings file {path}: {e}")
    return DEFAULT_SETTINGS.copy()


def save_settings(data):
    path = Path(app.config['SETTINGS_FILE'])
    try:
        path.write_text(json.dumps(data, indent=2))
    except OSError as e:
        print(f"Warning: Could not write settings file {path}: {e}")


def is_same_origin():
    """Reject browser requests sent from pages this app did not serve"""
    origin = request.headers.get('Origin')
    if not origin:
        return True
    return origin.rstrip('/') == request.host_url.rstrip('/')


def parse_page_selection(value):
    try:
        return PageSelection(value or PageSelection.KEEP_ALL.value)
    except ValueError:
        return None


class WebConversionEvents(ConversionEvents):
    """Forwards batch events to connected browsers"""

    def on_progress(self, percent):
        current_batch['progress'] = percent
        socketio.emit('progress_update', {'percent': percent})

    def on_log(self, line):
        print(line)
        socketio.emit('log_line', {'line': line})


def run_batch(config):
    """Run a batch and report its outcome over WebSocket"""
    try:
        check_dependencies()
        coordinator = BatchCoordinator(config, WebConversionEvents())
        results = coordinator.run()
        current_batch['failed'] = dict(coordinator.failure_log)
        socketio.emit('batch_complete', {
            'directory': str(config.target_dir),
            'converted': sum(1 for r in results if r.success),
            'total': len(results),
            'failed': coordinator.failure_log,
        })
        print(f"Batch finished for {config.target_dir}: {len(results) - len(coordinator.failure_log)}/{len(results)} converted")
    except Exception as e:
        print(f"Batch error: {e}")
        socketio.emit('batch_error', {'error': str(e)})
    finally:
        with batch_lock:
            current_batch['running'] = False


@app.route('/')
def index():
    """Main interface"""
    return render_template('index.html', settings=load_settings(), quality=DEFAULT_QUALITY)


@app.route('/settings', methods=['GET'])
def get_settings():
    return jsonify(load_settings())


@app.route('/settings', methods=['POST'])
def update_settings():
    if not is_same_origin():
        return jsonify({'error': 'Cross-origin requests are not allowed'}), 403
    data = request.get_json(silent=True) or request.form
    settings = load_settings()

    if 'page_selection' in data:
        if parse_page_selection(data['page_selection']) is None:
            return jsonify({'error': f"Unknown page selection: {data['page_selection']}"}), 400
        settings['page_selection'] = data['page_selection']
    if 'last_directory' in data:
        settings['last_directory'] = data['last_directory']

    save_settings(settings)
    return jsonify(settings)


@app.route('/convert', methods=['POST'])
def start_conversion():
    """Start converting every archive in the requested directory"""
    if not is_same_origin():
        return jsonify({'error': 'Cross-origin requests are not allowed'}), 403
    data = request.get_json(silent=True) or request.form
    directory = (data.get('directory') or '').strip()
    if not directory:
        return jsonify({'error': 'No directory provided'}), 400

    page_selection = parse_page_selection(data.get('page_selection'))
    if page_selection is None:
        return jsonify({'error': f"Unknown page selection: {data.get('page_selection')}"}), 400

    try:
        quality = int(data.get('quality', DEFAULT_QUALITY))
    except (TypeError, ValueError):
        return jsonify({'error': 'Quality must be a number'}), 400

    config = BatchConfig(directory, page_selection=page_selection, quality=quality)
    try:
        config.validate()
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    with batch_lock:
        if current_batch['running']:
            return jsonify({'error': 'A conversion is already in progress'}), 409
        current_batch.update(running=True, directory=str(config.target_dir), progress=0, failed={})

    save_settings({**load_settings(),
                   'last_directory': str(config.target_dir),
                   'page_selection': page_selection.value})

    # Start conversion in background thread
    thread = Thread(target=run_batch, args=(config,))
    thread.daemon = True
    current_batch['thread'] = thread
    thread.start()

    print(f"Started batch for {config.target_dir} ({page_selection.value}, quality {quality})")
    return jsonify({'status': 'started', 'directory': str(config.target_dir)})


@app.route('/status')
def get_status():
    """Get status of the current or last batch"""
    return jsonify({
        'running': current_batch['running'],
        'directory': current_batch['directory'],
        'progress': current_batch['progress'],
        'failed': current_batch['failed'],
    })


@socketio.on('connect')
def handle_connect():
    """Handle WebSocket connection"""
    print(f"Client connected: {request.sid}")


@socketio.on('disconnect')
def handle_disconnect():
    """Handle WebSocket disconnection"""
    print(f"Client disconnected: {request.sid}")


if __name__ == '__main__':
    check_dependencies()
    print("Starting CBR2PDF Web Interface...")
    print("Settings file:", os.path.abspath(app.config['SETTINGS_FILE']))
    print("Open your browser to: http://localhost:8080")

    # Run the app
    socketio.run(app, host='127.0.0.1', port=8080, allow_unsafe_werkzeug=True)
