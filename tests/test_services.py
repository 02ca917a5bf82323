#!/usr/bin/env python3
"""
Tests for the party and session services.
"""
import os
import unittest
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import fakeredis
import requests

import squadroll
from app.repositories import LibraryRepository, PartyRepository
from app.services import LoginError, PartyService, SessionService, SteamSession
from mock_steam import MockSteamClient
from multiuser import CommonLibraryResolver

USER1 = SteamSession('76561198000000001', 'GamerPro99', 'http://img/1.jpg')
USER2 = SteamSession('76561198000000002', 'SteamMaster', 'http://img/2.jpg')
USER3 = SteamSession('76561198000000003', 'GameWizard', 'http://img/3.jpg')


def make_party_service(redis_client=None, client=None):
    redis_client = redis_client or fakeredis.FakeRedis(decode_responses=True)
    client = client or MockSteamClient()
    return PartyService(
        PartyRepository(redis_client),
        LibraryRepository(redis_client),
        client,
        CommonLibraryResolver(client, delay=0),
    )


# ===========================================================================
# PartyService
# ===========================================================================

class TestPartyMembership(unittest.TestCase):

    def setUp(self):
        self.service = make_party_service()
        self.party = self.service.create_party(USER1)

    def test_create_party(self):
        self.assertTrue(squadroll.is_valid_join_code(self.party.code))
        self.assertEqual(self.party.host_identity, USER1.identity)
        self.assertEqual(self.party.members[0].display_name, 'GamerPro99')

    def test_create_retries_on_collision(self):
        codes = iter(['AAAAAA', 'AAAAAA', 'BBBBBB'])
        with patch('squadroll.generate_join_code', lambda: next(codes)):
            first = self.service.create_party(USER1)
            second = self.service.create_party(USER2)
        self.assertEqual(first.code, 'AAAAAA')
        self.assertEqual(second.code, 'BBBBBB')

    def test_create_gives_up(self):
        with patch('squadroll.generate_join_code', return_value=self.party.code):
            with self.assertRaises(squadroll.ConflictError):
                self.service.create_party(USER2)

    def test_get_party_normalizes_code(self):
        party = self.service.get_party(self.party.code.lower())
        self.assertEqual(party.code, self.party.code)

    def test_get_party_invalid_code(self):
        with self.assertRaises(squadroll.ValidationError):
            self.service.get_party('abc')

    def test_get_missing_party(self):
        with self.assertRaises(squadroll.NotFoundError):
            self.service.get_party('ZZZZZZ')

    def test_join_twice(self):
        self.service.join_party(self.party.code, USER2)
        party = self.service.join_party(self.party.code, USER2)
        self.assertEqual(len(party.members), 2)

    def test_join_missing_party(self):
        with self.assertRaises(squadroll.NotFoundError):
            self.service.join_party('ZZZZZZ', USER2)

    def test_leave_reassigns_and_closes(self):
        self.service.join_party(self.party.code, USER2)
        party = self.service.leave_party(self.party.code, USER1.identity)
        self.assertEqual(party.host_identity, USER2.identity)
        self.assertIsNone(self.service.leave_party(self.party.code, USER2.identity))
        with self.assertRaises(squadroll.NotFoundError):
            self.service.get_party(self.party.code)

    def test_leave_by_non_member_is_noop(self):
        party = self.service.leave_party(self.party.code, USER3.identity)
        self.assertEqual(len(party.members), 1)


class TestPartyGames(unittest.TestCase):

    def setUp(self):
        self.redis = fakeredis.FakeRedis(decode_responses=True)
        self.service = make_party_service(self.redis)
        self.code = self.service.create_party(USER1).code
        self.service.join_party(self.code, USER2)

    def test_load_games(self):
        count = self.service.load_games(self.code, USER1.identity)
        self.assertEqual(count, 10)
        party = self.service.get_party(self.code)
        self.assertTrue(party.find_member(USER1.identity).games_loaded)
        self.assertTrue(self.redis.exists(f'games:{self.code}:{USER1.identity}'))

    def test_load_games_requires_membership(self):
        with self.assertRaises(squadroll.NotFoundError):
            self.service.load_games(self.code, USER3.identity)

    def test_load_games_catalog_failure(self):
        client = MagicMock(spec=MockSteamClient)
        client.list_owned_games.side_effect = squadroll.CatalogUnavailable('down')
        service = make_party_service(self.redis, client)
        with self.assertRaises(squadroll.CatalogUnavailable):
            service.load_games(self.code, USER1.identity)
        self.assertFalse(self.service.get_party(self.code).find_member(USER1.identity).games_loaded)

    def test_not_ready_until_everyone_loaded(self):
        self.service.load_games(self.code, USER1.identity)
        result = self.service.common_games(self.code)
        self.assertEqual(result, {'ready': False, 'loaded': 1, 'total': 2})

    def test_common_games(self):
        self.service.load_games(self.code, USER1.identity)
        self.service.load_games(self.code, USER2.identity)
        result = self.service.common_games(self.code)
        self.assertTrue(result['ready'])
        names = [g['name'] for g in result['commonGames']]
        self.assertEqual(names, sorted(names, key=str.casefold))
        self.assertEqual(result['count'], 8)
        self.assertEqual(result['totalCount'], 8)
        self.assertEqual(result['filteredCount'], 8)
        self.assertEqual(result['selectedGenres'], [])
        self.assertIn('RPG', result['availableGenres'])
        self.assertTrue(self.redis.exists(f'common:{self.code}'))

    def test_votes_filter_common_games(self):
        self.service.load_games(self.code, USER1.identity)
        self.service.load_games(self.code, USER2.identity)
        votes = self.service.cast_genre_votes(self.code, USER1.identity, ['Strategy'])
        self.assertEqual(votes[0], {'identity': USER1.identity, 'displayName': 'GamerPro99',
                                    'genreVotes': ['Strategy']})
        self.assertEqual(votes[1]['genreVotes'], [])

        result = self.service.common_games(self.code, filtered=True)
        self.assertEqual({g['appId'] for g in result['commonGames']}, {1086940, 570})
        self.assertEqual(result['count'], 2)
        self.assertEqual(result['filteredCount'], 2)
        self.assertEqual(result['totalCount'], 8)
        self.assertEqual(result['selectedGenres'], ['Strategy'])

        unfiltered = self.service.common_games(self.code, filtered=False)
        self.assertEqual(unfiltered['count'], 8)
        self.assertEqual(unfiltered['filteredCount'], 2)

    def test_vote_validation(self):
        with self.assertRaises(squadroll.ValidationError):
            self.service.cast_genre_votes(self.code, USER1.identity, 'Action')
        with self.assertRaises(squadroll.ValidationError):
            self.service.cast_genre_votes(self.code, USER1.identity, ['Action', 3])
        with self.assertRaises(squadroll.NotFoundError):
            self.service.cast_genre_votes(self.code, USER3.identity, ['Action'])

    def test_new_member_invalidates_common_games(self):
        self.service.load_games(self.code, USER1.identity)
        self.service.load_games(self.code, USER2.identity)
        self.service.common_games(self.code)
        self.service.join_party(self.code, USER3)
        self.assertFalse(self.redis.exists(f'common:{self.code}'))
        self.assertFalse(self.service.common_games(self.code)['ready'])

        self.service.load_games(self.code, USER3.identity)
        result = self.service.common_games(self.code)
        self.assertEqual(result['totalCount'], 6)

    def test_leave_invalidates_common_games(self):
        self.service.join_party(self.code, USER3)
        for user in (USER1, USER2, USER3):
            self.service.load_games(self.code, user.identity)
        self.assertEqual(self.service.common_games(self.code)['totalCount'], 6)

        self.service.leave_party(self.code, USER3.identity)
        self.assertFalse(self.redis.exists(f'games:{self.code}:{USER3.identity}'))
        self.assertEqual(self.service.common_games(self.code)['totalCount'], 8)

    def test_member_leaving_during_resolve_is_not_cached(self):
        self.service.join_party(self.code, USER3)
        for user in (USER1, USER2, USER3):
            self.service.load_games(self.code, user.identity)

        service = self.service
        code = self.code

        class LeavingResolver(CommonLibraryResolver):
            def resolve(self, libraries):
                games = super().resolve(libraries)
                service.leave_party(code, USER3.identity)
                return games

        self.service._resolver = LeavingResolver(MockSteamClient(), delay=0)
        self.assertEqual(self.service.common_games(self.code)['totalCount'], 6)
        self.assertFalse(self.redis.exists(f'common:{self.code}'))

        self.service._resolver = CommonLibraryResolver(MockSteamClient(), delay=0)
        self.assertEqual(self.service.common_games(self.code)['totalCount'], 8)

    def test_cached_common_games_are_reused(self):
        self.service.load_games(self.code, USER1.identity)
        self.service.load_games(self.code, USER2.identity)
        self.service.common_games(self.code)
        with patch.object(CommonLibraryResolver, 'resolve') as resolve:
            self.service.common_games(self.code)
        resolve.assert_not_called()

    def test_missing_library_counts_as_not_ready(self):
        self.service.load_games(self.code, USER1.identity)
        self.service.load_games(self.code, USER2.identity)
        self.redis.delete(f'games:{self.code}:{USER2.identity}')
        self.redis.delete(f'common:{self.code}')
        self.assertEqual(self.service.common_games(self.code),
                         {'ready': False, 'loaded': 1, 'total': 2})

    def test_roll(self):
        self.service.load_games(self.code, USER1.identity)
        self.service.load_games(self.code, USER2.identity)
        self.service.cast_genre_votes(self.code, USER2.identity, ['RPG'])
        game = self.service.roll(self.code)
        self.assertIn('RPG', game.genres)

    def test_roll_not_ready(self):
        with self.assertRaises(squadroll.ValidationError):
            self.service.roll(self.code)

    def test_roll_with_no_matches(self):
        self.service.load_games(self.code, USER1.identity)
        self.service.load_games(self.code, USER2.identity)
        self.service.cast_genre_votes(self.code, USER1.identity, ['Racing'])
        with self.assertRaises(squadroll.NotFoundError):
            self.service.roll(self.code)


# ===========================================================================
# SessionService
# ===========================================================================

class TestSteamSession(unittest.TestCase):

    def test_round_trip(self):
        self.assertEqual(SteamSession.from_dict(USER1.to_dict()), USER1)

    def test_rejects_bad_payloads(self):
        for payload in (None, [], {}, {'identity': ''}, {'identity': 5},
                        {'identity': 'x', 'displayName': 7}):
            with self.assertRaises(ValueError):
                SteamSession.from_dict(payload)


class TestSessionCookie(unittest.TestCase):

    def setUp(self):
        self.service = SessionService('test-secret', app_url='http://localhost:5000', secure=False)

    def test_dumps_and_read(self):
        cookie = self.service.dumps(USER1)
        self.assertEqual(self.service.read(cookie), USER1)

    def test_tampered_cookie(self):
        cookie = self.service.dumps(USER1)
        self.assertIsNone(self.service.read(cookie[:-2] + 'xx'))

    def test_other_secret(self):
        cookie = SessionService('another-secret').dumps(USER1)
        self.assertIsNone(self.service.read(cookie))

    def test_unsigned_json_is_rejected(self):
        self.assertIsNone(self.service.read('{"identity": "76561198000000001"}'))
        self.assertIsNone(self.service.read(''))
        self.assertIsNone(self.service.read(None))

    def test_expired_cookie(self):
        cookie = self.service.dumps(USER1)
        self.service.MAX_AGE = -1
        self.assertIsNone(self.service.read(cookie))

    def test_signed_but_malformed_payload(self):
        cookie = self.service._serializer.dumps({'displayName': 'no identity'})
        self.assertIsNone(self.service.read(cookie))

    def test_cookie_options(self):
        options = self.service.cookie_options()
        self.assertEqual(options['max_age'], 30 * 24 * 60 * 60)
        self.assertTrue(options['httponly'])
        self.assertEqual(options['samesite'], 'Lax')
        self.assertFalse(options['secure'])


class TestOpenIDLogin(unittest.TestCase):

    def setUp(self):
        self.service = SessionService('test-secret', app_url='https://squad.example.com/',
                                      verify_openid=True)
        self.client = MockSteamClient()
        self.params = {
            'openid.ns': 'http://specs.openid.net/auth/2.0',
            'openid.mode': 'id_res',
            'openid.claimed_id': 'https://steamcommunity.com/openid/id/76561198000000002',
            'openid.sig': 'abc',
        }

    def test_build_login_url(self):
        return_to = self.service.callback_url('AB12C3')
        url = self.service.build_login_url(return_to)
        parts = urlsplit(url)
        query = parse_qs(parts.query)
        self.assertEqual(f'{parts.scheme}://{parts.netloc}{parts.path}',
                         'https://steamcommunity.com/openid/login')
        self.assertEqual(query['openid.mode'], ['checkid_setup'])
        self.assertEqual(query['openid.realm'], ['https://squad.example.com'])
        self.assertEqual(query['openid.return_to'],
                         ['https://squad.example.com/api/auth/steam/callback?join=AB12C3'])

    def test_complete_login(self):
        with patch.object(self.service, 'verify_assertion', return_value=True):
            session = self.service.complete_login(self.params, self.client)
        self.assertEqual(session.identity, '76561198000000002')
        self.assertEqual(session.display_name, 'SteamMaster')

    def test_wrong_mode(self):
        self.params['openid.mode'] = 'cancel'
        with self.assertRaises(LoginError) as ctx:
            self.service.complete_login(self.params, self.client)
        self.assertEqual(ctx.exception.code, 'auth_failed')

    def test_missing_claimed_id(self):
        del self.params['openid.claimed_id']
        with self.assertRaises(LoginError) as ctx:
            self.service.complete_login(self.params, self.client)
        self.assertEqual(ctx.exception.code, 'no_claimed_id')

    def test_bad_claimed_id(self):
        self.params['openid.claimed_id'] = 'https://example.com/someone'
        with self.assertRaises(LoginError) as ctx:
            self.service.complete_login(self.params, self.client)
        self.assertEqual(ctx.exception.code, 'invalid_steam_id')

    def test_unverified_assertion(self):
        with patch.object(self.service, 'verify_assertion', return_value=False):
            with self.assertRaises(LoginError) as ctx:
                self.service.complete_login(self.params, self.client)
        self.assertEqual(ctx.exception.code, 'auth_failed')

    def test_profile_not_found(self):
        client = MagicMock(spec=MockSteamClient)
        client.get_player_summary.return_value = None
        with patch.object(self.service, 'verify_assertion', return_value=True):
            with self.assertRaises(LoginError) as ctx:
                self.service.complete_login(self.params, client)
        self.assertEqual(ctx.exception.code, 'profile_not_found')

    def test_profile_lookup_error(self):
        client = MagicMock(spec=MockSteamClient)
        client.get_player_summary.side_effect = squadroll.UpstreamUnavailable('down')
        with patch.object(self.service, 'verify_assertion', return_value=True):
            with self.assertRaises(LoginError) as ctx:
                self.service.complete_login(self.params, client)
        self.assertEqual(ctx.exception.code, 'auth_error')

    def test_verify_assertion_posts_check_authentication(self):
        resp = MagicMock(status_code=200, text='ns:http://specs.openid.net/auth/2.0\nis_valid:true\n')
        with patch.object(self.service.http, 'post', return_value=resp) as post:
            self.assertTrue(self.service.verify_assertion(self.params))
        payload = post.call_args.kwargs['data']
        self.assertEqual(payload['openid.mode'], 'check_authentication')
        self.assertEqual(payload['openid.sig'], 'abc')

    def test_verify_assertion_rejected(self):
        resp = MagicMock(status_code=200, text='is_valid:false\n')
        with patch.object(self.service.http, 'post', return_value=resp):
            self.assertFalse(self.service.verify_assertion(self.params))

    def test_verify_assertion_network_error(self):
        with patch.object(self.service.http, 'post', side_effect=requests.ConnectionError()):
            self.assertFalse(self.service.verify_assertion(self.params))

    def test_mock_login_skips_verification(self):
        service = SessionService('test-secret', verify_openid=True, mock=True)
        url = service.build_mock_callback_url('76561198000000003', 'AB12C3')
        params = {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}
        self.assertEqual(params['join'], 'AB12C3')
        with patch.object(service, 'verify_assertion') as verify:
            session = service.complete_login(params, self.client)
        verify.assert_not_called()
        self.assertEqual(session.display_name, 'GameWizard')


if __name__ == '__main__':
    unittest.main()
