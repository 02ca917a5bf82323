#!/usr/bin/env python3
"""
SquadRoll Web - Flask front end for party game rolls.

Members sign in through Steam, gather in a party by six-character code,
load their libraries, vote on genres and roll one of the multiplayer games
everyone owns.  Pages are thin; the JSON API under ``/api`` does the work.
"""

import argparse
import logging
import os
from functools import wraps
from typing import Dict, Optional

import redis
from flask import Flask, g, jsonify, redirect, render_template_string, request
from werkzeug.exceptions import HTTPException

import multiuser
import squadroll
from app.repositories import LibraryRepository, PartyRepository
from app.services import LoginError, PartyService, SessionService
from mock_steam import get_random_mock_user

# Initialize logging early so repository/service logs are captured
log_level = os.getenv('SQUADROLL_LOG_LEVEL', 'INFO')
squadroll.setup_logging(log_level)
web_logger = logging.getLogger('squadroll.web')
web_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))
try:
    os.makedirs('logs', exist_ok=True)
    fh = logging.FileHandler('logs/squadroll_web.log')
    fh.setFormatter(logging.Formatter('[%(asctime)s] %(levelname)s %(name)s: %(message)s'))
    fh.setLevel(getattr(logging, log_level.upper(), logging.INFO))
    web_logger.addHandler(fh)
except OSError:
    web_logger.warning('Could not create log file handler')

app = Flask(__name__)

# Wired up by init_services(); routes call _services() first
config: Optional[Dict] = None
catalog_client: Optional[squadroll.GamePlatformClient] = None
party_service: Optional[PartyService] = None
session_service: Optional[SessionService] = None


def init_services(app_config: Optional[Dict] = None, redis_client=None) -> None:
    """Build the catalog client, repositories and services.

    Args:
        app_config:   Configuration dict; defaults to :func:`squadroll.load_config`.
        redis_client: Redis connection; defaults to one opened from
                      ``redis_url`` with ``decode_responses=True``.
    """
    global config, catalog_client, party_service, session_service

    config = app_config if app_config is not None else squadroll.load_config()
    if redis_client is None:
        redis_client = redis.from_url(config['redis_url'], decode_responses=True)

    catalog_client = squadroll.build_catalog_client(config)
    resolver = multiuser.CommonLibraryResolver(
        catalog_client,
        delay=config.get('metadata_delay', 0.2),
        include_on_metadata_failure=config.get('include_on_metadata_failure', True),
    )
    party_service = PartyService(
        PartyRepository(redis_client),
        LibraryRepository(redis_client),
        catalog_client,
        resolver,
    )
    session_service = SessionService(
        config['secret_key'],
        app_url=config.get('app_url', 'http://localhost:5000'),
        secure=not config.get('debug', False),
        verify_openid=config.get('openid_verify', True),
        mock=bool(config.get('use_mock_steam')),
        timeout=config.get('request_timeout', 10),
    )
    app.secret_key = config['secret_key']
    web_logger.info('Services initialized (mock Steam: %s)', bool(config.get('use_mock_steam')))


def _services() -> None:
    if party_service is None or session_service is None:
        init_services()


def _current_session():
    _services()
    return session_service.read(request.cookies.get(SessionService.COOKIE_NAME))


def require_session(f):
    """Decorator to require a signed-in Steam session"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        steam_session = _current_session()
        if steam_session is None:
            raise squadroll.Unauthenticated('Not authenticated')
        g.steam_session = steam_session
        return f(*args, **kwargs)
    return decorated_function


def _json_body() -> Dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.errorhandler(squadroll.SquadRollError)
def handle_squadroll_error(e: squadroll.SquadRollError):
    return jsonify({'error': e.message}), e.status_code


@app.errorhandler(Exception)
def handle_unexpected_error(e: Exception):
    if isinstance(e, HTTPException):
        return e
    web_logger.exception('Unhandled error on %s %s', request.method, request.path)
    return jsonify({'error': 'Internal server error'}), 500


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------

BASE_HTML = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>SquadRoll</title>
    <style>
        body { font-family: 'Segoe UI', Tahoma, sans-serif; background: #0a0a0f; color: #eee;
               max-width: 720px; margin: 0 auto; padding: 20px; }
        .error { color: #ff6b6b; }
        button, .button { background: #667eea; color: #fff; border: 0; padding: 8px 16px;
                          border-radius: 6px; cursor: pointer; text-decoration: none; }
        li { margin: 4px 0; }
    </style>
</head>
<body>
    <h1>🎲 SquadRoll</h1>
    {% if error %}<p class="error">Error: {{ error }}</p>{% endif %}
    {{ body|safe }}
</body>
</html>
"""

INDEX_BODY = """
<p>Find the multiplayer games your whole party owns, then roll one.</p>
<a class="button" href="/api/auth/steam{% if join %}?join={{ join|urlencode }}{% endif %}">Sign in through Steam</a>
"""

DASHBOARD_BODY = """
<p>Signed in as <strong>{{ steam_session.display_name }}</strong> (<a href="/api/auth/logout">log out</a>)</p>
<button id="create">Create party</button>
<form id="join"><input name="code" maxlength="6" placeholder="Party code"><button>Join</button></form>
<script>
document.getElementById('create').onclick = async () => {
    const res = await fetch('/api/party/create', {method: 'POST'});
    const data = await res.json();
    if (data.party) location.href = '/party/' + data.party.code;
};
document.getElementById('join').onsubmit = async (e) => {
    e.preventDefault();
    const code = e.target.code.value.trim().toUpperCase();
    const res = await fetch('/api/party/' + code, {method: 'POST'});
    if (res.ok) location.href = '/party/' + code; else alert((await res.json()).error);
};
</script>
"""

PARTY_BODY = """
<h2>Party {{ party.code }}</h2>
<ul id="members"></ul>
<button id="load">Load my games</button>
<div id="genres"></div>
<p id="status"></p>
<button id="roll">Roll</button> <button id="leave">Leave</button>
<h3 id="result"></h3>
<script>
const code = {{ party.code|tojson }};
const post = (url, body) => fetch(url, {method: 'POST', headers: {'Content-Type': 'application/json'},
                                        body: JSON.stringify(body)});
let myVotes = new Set();
async function refresh() {
    const party = (await (await fetch('/api/party/' + code)).json()).party;
    if (!party) { location.href = '/dashboard?error=party_not_found'; return; }
    // names and genres come from users; only ever set them as text
    document.getElementById('members').replaceChildren(...party.members.map(m => {
        const li = document.createElement('li');
        li.textContent = m.displayName + (m.identity === party.hostIdentity ? ' (host)' : '') +
            (m.gamesLoaded ? ' ✓' : ' ...');
        return li;
    }));
    const common = await (await fetch('/api/games/common?filtered=true&code=' + code)).json();
    const status = document.getElementById('status');
    if (!common.ready) { status.textContent = common.loaded + '/' + common.total + ' libraries loaded'; return; }
    status.textContent = common.filteredCount + ' of ' + common.totalCount + ' common games match';
    document.getElementById('genres').replaceChildren(...common.availableGenres.map(genre => {
        const label = document.createElement('label');
        const box = document.createElement('input');
        box.type = 'checkbox';
        box.value = genre;
        box.checked = myVotes.has(genre);
        label.append(box, ' ' + genre + ' ');
        return label;
    }));
}
document.getElementById('genres').onchange = async (e) => {
    e.target.checked ? myVotes.add(e.target.value) : myVotes.delete(e.target.value);
    await post('/api/games/vote', {partyCode: code, genres: [...myVotes]});
    refresh();
};
document.getElementById('load').onclick = async () => { await post('/api/games/load', {partyCode: code}); refresh(); };
document.getElementById('roll').onclick = async () => {
    const data = await (await post('/api/games/roll', {partyCode: code})).json();
    document.getElementById('result').textContent = data.game ? data.game.name : data.error;
};
document.getElementById('leave').onclick = async () => {
    await fetch('/api/party/' + code, {method: 'DELETE'});
    location.href = '/dashboard';
};
refresh();
setInterval(refresh, 3000);
</script>
"""


def _render(body: str, **context) -> str:
    return render_template_string(BASE_HTML, body=render_template_string(body, **context),
                                  error=request.args.get('error'))


@app.route('/')
def index():
    return _render(INDEX_BODY, join=request.args.get('join', ''))


@app.route('/dashboard')
def dashboard():
    steam_session = _current_session()
    if steam_session is None:
        return redirect('/')
    return _render(DASHBOARD_BODY, steam_session=steam_session)


@app.route('/party/<code>')
def party_page(code: str):
    steam_session = _current_session()
    if steam_session is None:
        return redirect(f'/?join={squadroll.normalize_join_code(code)}')
    try:
        party = party_service.get_party(code)
    except (squadroll.ValidationError, squadroll.NotFoundError):
        return redirect('/dashboard?error=party_not_found')
    return _render(PARTY_BODY, party=party, steam_session=steam_session)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

@app.route('/api/auth/steam')
def auth_steam():
    """Start Steam sign-in, carrying an optional party code through."""
    _services()
    join_code = None
    raw_join = request.args.get('join')
    if raw_join:
        if not squadroll.is_valid_join_code(raw_join):
            return redirect('/?error=invalid_code')
        join_code = squadroll.normalize_join_code(raw_join)

    if session_service.mock:
        mock_user = get_random_mock_user()
        return redirect(session_service.build_mock_callback_url(mock_user['steamid'], join_code))
    return redirect(session_service.build_login_url(session_service.callback_url(join_code)))


@app.route('/api/auth/steam/callback')
def auth_steam_callback():
    _services()
    try:
        steam_session = session_service.complete_login(request.args.to_dict(), catalog_client)
    except LoginError as e:
        web_logger.warning('Steam login failed: %s', e.code)
        return redirect(f'/?error={e.code}')
    except Exception:
        web_logger.exception('Steam login error')
        return redirect('/?error=auth_error')

    target = '/dashboard'
    join_code = request.args.get('join')
    if join_code and squadroll.is_valid_join_code(join_code):
        try:
            party = party_service.join_party(join_code, steam_session)
            target = f'/party/{party.code}'
        except squadroll.SquadRollError as e:
            web_logger.warning('Could not join %s after login: %s', join_code, e.message)
            target = '/dashboard?error=party_not_found'

    response = redirect(target)
    response.set_cookie(SessionService.COOKIE_NAME, session_service.dumps(steam_session),
                        **session_service.cookie_options())
    return response


@app.route('/api/auth/logout')
def auth_logout():
    _services()
    response = redirect('/')
    response.delete_cookie(SessionService.COOKIE_NAME, httponly=True,
                           secure=session_service.secure, samesite='Lax')
    return response


@app.route('/api/auth/current')
@require_session
def auth_current():
    return jsonify({'session': g.steam_session.to_dict()})


# ---------------------------------------------------------------------------
# Parties
# ---------------------------------------------------------------------------

@app.route('/api/party/create', methods=['POST'])
@require_session
def api_create_party():
    party = party_service.create_party(g.steam_session)
    return jsonify({'party': party.to_dict()})


@app.route('/api/party/<code>', methods=['GET'])
def api_get_party(code: str):
    _services()
    return jsonify({'party': party_service.get_party(code).to_dict()})


@app.route('/api/party/<code>', methods=['POST'])
@require_session
def api_join_party(code: str):
    party = party_service.join_party(code, g.steam_session)
    return jsonify({'party': party.to_dict()})


@app.route('/api/party/<code>', methods=['DELETE'])
@require_session
def api_leave_party(code: str):
    party_service.leave_party(code, g.steam_session.identity)
    return jsonify({'success': True})


# ---------------------------------------------------------------------------
# Games
# ---------------------------------------------------------------------------

@app.route('/api/games/load', methods=['POST'])
@require_session
def api_load_games():
    data = _json_body()
    count = party_service.load_games(data.get('partyCode'), g.steam_session.identity)
    return jsonify({'success': True, 'gameCount': count})


@app.route('/api/games/vote', methods=['POST'])
@require_session
def api_vote():
    data = _json_body()
    votes = party_service.cast_genre_votes(data.get('partyCode'), g.steam_session.identity,
                                           data.get('genres'))
    return jsonify({'success': True, 'votes': votes})


@app.route('/api/games/common', methods=['GET'])
def api_common_games():
    _services()
    filtered = squadroll.parse_bool(request.args.get('filtered', 'false'))
    return jsonify(party_service.common_games(request.args.get('code'), filtered=filtered))


@app.route('/api/games/roll', methods=['POST'])
@require_session
def api_roll():
    data = _json_body()
    game = party_service.roll(data.get('partyCode'))
    web_logger.info('Party %s rolled %s', data.get('partyCode'), game.name)
    return jsonify({'game': game.to_dict()})


def main():
    """Main entry point for the web server"""
    parser = argparse.ArgumentParser(description='SquadRoll web server')
    parser.add_argument('--config', default='config.json', help='Path to config file')
    parser.add_argument('--host', default='127.0.0.1')
    parser.add_argument('--port', type=int, default=5000)
    parser.add_argument('--mock', action='store_true', help='Use mock Steam data')
    args = parser.parse_args()

    app_config = squadroll.load_config(args.config)
    if args.mock:
        app_config['use_mock_steam'] = True
    squadroll.setup_logging(app_config.get('log_level', 'INFO'))
    init_services(app_config)

    print("\n" + "=" * 60)
    print("🎲 SquadRoll is starting...")
    print("=" * 60)
    print(f"\nOpen your browser and go to:\n  http://{args.host}:{args.port}")
    print("\nPress Ctrl+C to stop the server")
    print("=" * 60 + "\n")

    try:
        app.run(host=args.host, port=args.port, debug=app_config.get('debug', False))
    except KeyboardInterrupt:
        print("\n🛑 SquadRoll stopped\n")


if __name__ == '__main__':
    main()
