"""Steam OpenID sign-in and the signed ``steam_session`` cookie."""
import logging
from typing import Dict, Optional
from urllib.parse import urlencode, urlsplit

import requests
from itsdangerous import BadSignature, URLSafeTimedSerializer

import squadroll

STEAM_OPENID_ENDPOINT = 'https://steamcommunity.com/openid/login'
OPENID_NS = 'http://specs.openid.net/auth/2.0'
IDENTIFIER_SELECT = 'http://specs.openid.net/auth/2.0/identifier_select'


class LoginError(Exception):
    """Sign-in failed; ``code`` is the ``error`` query value for the redirect."""

    def __init__(self, code: str, message: str = ''):
        super().__init__(message or code)
        self.code = code


class SteamSession:
    """The identity carried by the session cookie."""

    def __init__(self, identity: str, display_name: str = '', avatar_url: str = ''):
        self.identity = identity
        self.display_name = display_name
        self.avatar_url = avatar_url

    def to_dict(self) -> Dict:
        return {
            'identity': self.identity,
            'displayName': self.display_name,
            'avatarUrl': self.avatar_url,
        }

    @classmethod
    def from_dict(cls, data) -> 'SteamSession':
        """Validate a decoded cookie payload.

        Raises:
            ValueError: Payload is not a dict or ``identity`` is not a
                non-empty string.
        """
        if not isinstance(data, dict):
            raise ValueError('session payload must be an object')
        identity = data.get('identity')
        if not isinstance(identity, str) or not identity:
            raise ValueError('session identity missing')
        display_name = data.get('displayName') or ''
        avatar_url = data.get('avatarUrl') or ''
        if not isinstance(display_name, str) or not isinstance(avatar_url, str):
            raise ValueError('session profile fields must be strings')
        return cls(identity, display_name, avatar_url)

    def __eq__(self, other) -> bool:
        if not isinstance(other, SteamSession):
            return NotImplemented
        return self.to_dict() == other.to_dict()


class SessionService:
    """Builds Steam login URLs, checks OpenID callbacks and signs cookies.

    Args:
        secret_key:    Key used to sign the cookie.
        app_url:       Public base URL; the OpenID realm and ``return_to``
                       are derived from it.
        secure:        Whether the cookie is sent only over HTTPS.
        verify_openid: Confirm each assertion with Steam
                       (``openid.mode=check_authentication``).
        mock:          Accept ``mock_steamid`` in the callback instead of a
                       real OpenID assertion.
        timeout:       Timeout for the verification request.
    """

    COOKIE_NAME = 'steam_session'
    MAX_AGE = 30 * 24 * 60 * 60
    SALT = 'steam-session'

    def __init__(self, secret_key: str, app_url: str = 'http://localhost:5000',
                 secure: bool = True, verify_openid: bool = True, mock: bool = False,
                 timeout: float = 10) -> None:
        self._serializer = URLSafeTimedSerializer(secret_key, salt=self.SALT)
        self.app_url = app_url.rstrip('/')
        self.secure = secure
        self.verify_openid = verify_openid and not mock
        self.mock = mock
        self.timeout = timeout
        self.http = requests.Session()
        self._log = logging.getLogger(f'squadroll.service.{type(self).__name__}')

    # ------------------------------------------------------------------
    # Cookie
    # ------------------------------------------------------------------

    def dumps(self, session: SteamSession) -> str:
        return self._serializer.dumps(session.to_dict())

    def read(self, cookie_value: Optional[str]) -> Optional[SteamSession]:
        """Decode a cookie value; anything invalid or expired yields ``None``."""
        if not cookie_value:
            return None
        try:
            data = self._serializer.loads(cookie_value, max_age=self.MAX_AGE)
            return SteamSession.from_dict(data)
        except BadSignature:
            self._log.info("Rejected session cookie with a bad or expired signature")
            return None
        except ValueError as e:
            self._log.info("Rejected malformed session cookie: %s", e)
            return None

    def cookie_options(self) -> Dict:
        """Keyword arguments for ``Response.set_cookie``."""
        return {
            'max_age': self.MAX_AGE,
            'httponly': True,
            'secure': self.secure,
            'samesite': 'Lax',
        }

    # ------------------------------------------------------------------
    # OpenID
    # ------------------------------------------------------------------

    def callback_url(self, join_code: Optional[str] = None, **extra) -> str:
        params = dict(extra)
        if join_code:
            params['join'] = join_code
        url = f"{self.app_url}/api/auth/steam/callback"
        return f"{url}?{urlencode(params)}" if params else url

    def realm(self) -> str:
        parts = urlsplit(self.app_url)
        return f"{parts.scheme}://{parts.netloc}"

    def build_login_url(self, return_to: str) -> str:
        """Steam ``checkid_setup`` URL that comes back to *return_to*."""
        params = {
            'openid.ns': OPENID_NS,
            'openid.mode': 'checkid_setup',
            'openid.return_to': return_to,
            'openid.realm': self.realm(),
            'openid.identity': IDENTIFIER_SELECT,
            'openid.claimed_id': IDENTIFIER_SELECT,
        }
        return f"{STEAM_OPENID_ENDPOINT}?{urlencode(params)}"

    def build_mock_callback_url(self, steam_id: str, join_code: Optional[str] = None) -> str:
        """Callback URL standing in for a Steam round trip in mock mode."""
        params = {
            'openid.mode': 'id_res',
            'openid.claimed_id': IDENTIFIER_SELECT,
            'mock_steamid': steam_id,
        }
        if join_code:
            params['join'] = join_code
        return f"{self.app_url}/api/auth/steam/callback?{urlencode(params)}"

    def verify_assertion(self, params: Dict[str, str]) -> bool:
        """Ask Steam whether the signed assertion in *params* is genuine."""
        payload = {k: v for k, v in params.items() if k.startswith('openid.')}
        payload['openid.mode'] = 'check_authentication'
        try:
            resp = self.http.post(STEAM_OPENID_ENDPOINT, data=payload, timeout=self.timeout)
        except requests.RequestException as e:
            self._log.error("OpenID verification request failed: %s", e)
            return False
        return resp.status_code == 200 and 'is_valid:true' in resp.text

    def complete_login(self, params: Dict[str, str],
                       client: squadroll.GamePlatformClient) -> SteamSession:
        """Turn the callback query string into a session.

        Raises:
            LoginError: ``code`` is one of ``auth_failed``, ``no_claimed_id``,
                ``invalid_steam_id``, ``profile_not_found`` or ``auth_error``.
        """
        if params.get('openid.mode') != 'id_res':
            raise LoginError('auth_failed')
        claimed_id = params.get('openid.claimed_id')
        if not claimed_id:
            raise LoginError('no_claimed_id')

        if self.mock and params.get('mock_steamid'):
            steam_id = params['mock_steamid']
        else:
            steam_id = squadroll.extract_steam_id_from_claimed_id(claimed_id)
        if not steam_id:
            raise LoginError('invalid_steam_id')

        if self.verify_openid and not self.verify_assertion(params):
            self._log.warning("OpenID assertion for %s was not confirmed", steam_id)
            raise LoginError('auth_failed')

        try:
            profile = client.get_player_summary(steam_id)
        except squadroll.SquadRollError as e:
            self._log.error("Profile lookup failed for %s: %s", steam_id, e)
            raise LoginError('auth_error', str(e)) from e
        if not profile:
            raise LoginError('profile_not_found')

        self._log.info("Signed in %s", steam_id)
        return SteamSession(
            identity=steam_id,
            display_name=profile.get('personaname', ''),
            avatar_url=profile.get('avatarfull', ''),
        )
