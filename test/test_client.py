from __future__ import annotations

import json
import unittest
from typing import Any

from netrunr_lib.client import GatewayClient
from netrunr_lib.const import Endpoint, GapiStatus
from netrunr_lib.session import SessionState
from netrunr_lib.types import ClientConfig, StreamKind, TransportKind


class _FakePost:
    def __init__(self, url: str, form: dict[str, Any], stream: bool, on_response, on_failure) -> None:
        self.url = url
        self.form = form
        self.stream = stream
        self.on_response = on_response
        self.on_failure = on_failure
        self.cancelled = False

    @property
    def endpoint(self) -> str:
        return "/" + self.url.split("/", 3)[3]

    def cancel(self) -> None:
        self.cancelled = True


class _FakeHttpChannel:
    def __init__(self) -> None:
        self.posts: list[_FakePost] = []

    def post(self, url, form, *, stream, on_response, on_failure) -> _FakePost:
        post = _FakePost(url, dict(form), stream, on_response, on_failure)
        self.posts.append(post)
        return post

    async def close(self) -> None:
        return None

    def last(self, endpoint: Endpoint) -> _FakePost:
        return [p for p in self.posts if p.endpoint == endpoint.value][-1]


class _FakeBrokerChannel:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict[str, Any]]] = []
        self.subscriptions: list[Any] = []
        self.closed = False
        self.on_message = None
        self.on_lost = None
        self.on_established = None

    @property
    def connected(self) -> bool:
        return not self.closed

    def open(self, client_id, username, password, *, on_established, on_message, on_lost, on_error) -> None:
        self.on_established = on_established
        self.on_message = on_message
        self.on_lost = on_lost

    def subscribe(self, topic, on_ack) -> None:
        self.subscriptions.append(on_ack)

    def publish(self, topic, payload) -> bool:
        self.published.append((topic, json.loads(payload)))
        return True

    def close(self, on_closed, on_failure=None) -> None:
        self.closed = True
        on_closed()

    def establish(self) -> None:
        self.on_established()
        for on_ack in self.subscriptions:
            on_ack(True)

    def deliver(self, obj: Any) -> None:
        self.on_message("gw1/2", json.dumps(obj).encode())


def _polling_client(**config: Any) -> tuple[GatewayClient, _FakeHttpChannel]:
    http = _FakeHttpChannel()
    client = GatewayClient(ClientConfig(transport=TransportKind.POLLING, **config), http_channel=http)
    client.session.apply_credentials(user="user", tid="7", token="tok", gwid="gw1")
    assert client.open() == 200
    return client, http


def _pubsub_client() -> tuple[GatewayClient, _FakeBrokerChannel]:
    broker = _FakeBrokerChannel()
    client = GatewayClient(ClientConfig(), http_channel=_FakeHttpChannel(), pubsub_channel=broker)
    client.session.apply_credentials(user="user", tid="7", token="tok", gwid="gw1")
    assert client.open() == 200
    broker.establish()
    assert client.state is SessionState.OPEN
    return client, broker


class _Recorder:
    def __init__(self) -> None:
        self.ok: list[dict[str, Any]] = []
        self.errors: list[dict[str, Any]] = []

    def success(self, reply: dict[str, Any]) -> None:
        self.ok.append(reply)

    def error(self, reply: dict[str, Any]) -> None:
        self.errors.append(reply)

    @property
    def calls(self) -> int:
        return len(self.ok) + len(self.errors)


class AdmissionTests(unittest.TestCase):
    def test_unauthenticated_is_rejected_before_transport(self) -> None:
        client = GatewayClient(ClientConfig(transport=TransportKind.POLLING), http_channel=_FakeHttpChannel())
        rec = _Recorder()
        self.assertEqual(client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error), 401)
        self.assertEqual(rec.errors, [{"result": 401}])

    def test_closed_transport_is_rejected(self) -> None:
        http = _FakeHttpChannel()
        client = GatewayClient(ClientConfig(transport=TransportKind.POLLING), http_channel=http)
        client.session.apply_credentials(user="user", token="tok", gwid="gw1")
        rec = _Recorder()
        self.assertEqual(client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error), 400)
        self.assertEqual(rec.errors, [{"result": 400}])
        self.assertEqual(http.posts, [])

    def test_streams_and_close_are_rejected_without_transport(self) -> None:
        http = _FakeHttpChannel()
        client = GatewayClient(ClientConfig(transport=TransportKind.POLLING), http_channel=http)
        client.session.apply_credentials(user="user", token="tok", gwid="gw1")
        rec = _Recorder()
        self.assertEqual(client.event({"did": "*"}, rec.success, rec.error), 400)
        self.assertEqual(client.notified({"did": "*"}, rec.success, rec.error), 400)
        self.assertEqual(client.close(None, rec.success, rec.error), 400)
        self.assertEqual(rec.errors, [{"result": 400}] * 3)
        self.assertEqual(client.session.registry.pending_count(), 0)
        self.assertEqual(http.posts, [])

    def test_concurrent_request_for_same_target_conflicts(self) -> None:
        client, http = _polling_client()
        first, second = _Recorder(), _Recorder()
        self.assertEqual(client.connect({"did": "AA:BB"}, first.success, first.error), 200)
        self.assertEqual(client.connect({"did": "aa:bb"}, second.success, second.error), 409)
        self.assertEqual(second.errors, [{"result": 409}])
        self.assertEqual(len(http.posts), 1)

        # other devices are independent
        third = _Recorder()
        self.assertEqual(client.connect({"did": "cc:dd"}, third.success, third.error), 200)

    def test_gateway_wide_commands_share_one_lock(self) -> None:
        client, _ = _polling_client()
        rec = _Recorder()
        self.assertEqual(client.scan({"period": 5}, rec.success, rec.error), 200)
        self.assertEqual(client.version({}, rec.success, rec.error), 409)
        self.assertEqual(client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error), 200)

    def test_invalid_arguments_release_the_lock(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        self.assertEqual(client.scan({}, rec.success, rec.error), 441)
        self.assertEqual(rec.errors[0]["result"], 441)
        self.assertFalse(client.session.guard.is_busy(None))
        self.assertEqual(http.posts, [])
        self.assertEqual(client.scan({"period": 5}, rec.success, rec.error), 200)


class PollingClientTests(unittest.TestCase):
    def test_scan_round_trip(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.scan({"period": 5}, rec.success, rec.error)
        post = http.last(Endpoint.LIST)
        self.assertEqual(post.form["passive"], 1)
        self.assertEqual(post.form["period"], 5)
        self.assertEqual(post.form["gwid"], "gw1/1")

        post.on_response({"result": 200, "c": 0, "nodes": []})
        self.assertEqual(rec.ok, [{"result": 200, "c": 0, "nodes": []}])
        self.assertEqual(rec.errors, [])
        self.assertEqual(client.session.guard.busy_targets(), ())

    def test_error_reply_releases_the_lock(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error)
        http.last(Endpoint.READ).on_response({"result": 500, "c": 20, "node": "aa:bb"})
        self.assertEqual(rec.errors, [{"result": 500, "c": 20, "node": "aa:bb"}])
        self.assertFalse(client.session.guard.is_busy("aa:bb"))

    def test_error_reply_without_node_releases_the_lock(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error)
        http.last(Endpoint.READ).on_response({"result": 401})
        self.assertEqual(rec.errors, [{"result": 401}])
        self.assertFalse(client.session.guard.is_busy("aa:bb"))
        self.assertEqual(client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error), 200)

    def test_transport_failure_releases_the_lock(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.write({"did": "aa:bb", "ch": 5, "value": "01"}, rec.success, rec.error)
        http.last(Endpoint.WRITE).on_failure({"result": 400, "error": "connection reset"})
        self.assertEqual(rec.errors[0]["error"], "connection reset")
        self.assertFalse(client.session.guard.is_busy("aa:bb"))

    def test_each_request_completes_exactly_once(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error)
        post = http.last(Endpoint.READ)
        post.on_response({"result": 200, "c": 20, "node": "aa:bb"})
        post.on_response({"result": 200, "c": 20, "node": "aa:bb"})
        post.on_failure({"result": 400, "error": "late"})
        self.assertEqual(rec.calls, 1)

    def test_raising_continuation_does_not_break_the_client(self) -> None:
        client, http = _polling_client()

        def boom(reply: dict[str, Any]) -> None:
            raise RuntimeError("caller bug")

        client.read({"did": "aa:bb", "ch": 5}, boom, boom)
        http.last(Endpoint.READ).on_response({"result": 200, "c": 20, "node": "aa:bb"})
        self.assertFalse(client.session.guard.is_busy("aa:bb"))

        rec = _Recorder()
        self.assertEqual(client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error), 200)

    def test_replies_for_two_devices_cross_connections(self) -> None:
        client, http = _polling_client()
        d1, d2 = _Recorder(), _Recorder()
        client.write({"did": "d1", "ch": 5, "value": "01"}, d1.success, d1.error)
        client.write({"did": "d2", "ch": 5, "value": "01"}, d2.success, d2.error)

        http.posts[-1].on_response({"result": 200, "c": 28, "node": "d1"})
        self.assertEqual(len(d1.ok), 1)
        self.assertEqual(d2.calls, 0)
        self.assertFalse(client.session.guard.is_busy("d1"))
        self.assertTrue(client.session.guard.is_busy("d2"))

    def test_connect_tracks_connected_devices(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.connect({"did": "aa:bb"}, rec.success, rec.error)
        http.last(Endpoint.CONNECT).on_response({"result": 505, "c": 4, "node": "aa:bb"})
        self.assertEqual(len(rec.ok), 1)
        self.assertEqual(client.connected_ids, frozenset({"aa:bb"}))

        client.disconnect({"did": "aa:bb"}, rec.success, rec.error)
        self.assertEqual(client.connected_ids, frozenset())

    def test_gateway_wide_show_answered_for_a_device_is_an_error(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.show({}, rec.success, rec.error)
        http.last(Endpoint.SHOW).on_response({"result": 200, "c": 2, "node": "aa:bb"})
        self.assertEqual(rec.ok, [])
        self.assertEqual(len(rec.errors), 1)

    def test_unsubscribe_errors_are_reported_as_success(self) -> None:
        client, http = _polling_client()
        for _ in range(2):
            rec = _Recorder()
            self.assertEqual(client.unsubscribe({"did": "aa:bb", "ch": 5}, rec.success, rec.error), 200)
            http.last(Endpoint.UNSUBSCRIBE).on_response({"result": 404, "c": 19, "node": "aa:bb"})
            self.assertEqual(len(rec.ok), 1)
            self.assertEqual(rec.errors, [])

    def test_disconnect_event_unlocks_device_for_new_connect(self) -> None:
        client, http = _polling_client()
        events = _Recorder()
        client.event({"did": "*"}, events.success, events.error)
        first = _Recorder()
        client.connect({"did": "aa:bb"}, first.success, first.error)
        self.assertEqual(client.connect({"did": "aa:bb"}, first.success, first.error), 409)

        http.last(Endpoint.EVENT).on_response({"result": 200, "event": 1, "node": "aa:bb"})
        self.assertEqual(len(events.ok), 1)

        second = _Recorder()
        self.assertEqual(client.connect({"did": "aa:bb"}, second.success, second.error), 200)

    def test_stream_registration(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        self.assertEqual(client.event({}, rec.success, rec.error), 441)
        self.assertEqual(client.event({"did": "aa:bb"}, rec.success, rec.error), 200)
        self.assertEqual(client.report({"did": "*"}, rec.success, rec.error), 200)
        self.assertEqual(len([p for p in http.posts if p.endpoint == Endpoint.EVENT.value]), 1)

        client.event({"did": "aa:bb"})
        self.assertTrue(client._http.polling)
        client.report({"did": "*"})
        self.assertFalse(client._http.polling)
        self.assertEqual(client.session.registry.pending_count(StreamKind.EVENT), 0)

    def test_close_discards_everything(self) -> None:
        client, http = _polling_client()
        rec = _Recorder()
        client.connect({"did": "aa:bb"}, rec.success, rec.error)
        client.event({"did": "*"}, rec.success, rec.error)
        closed = _Recorder()
        self.assertEqual(client.close(None, closed.success, closed.error), 200)
        http.last(Endpoint.CLOSE).on_response({"result": 200})

        self.assertEqual(closed.ok, [{}])
        self.assertIs(client.state, SessionState.CLOSED)
        self.assertFalse(client.is_open)
        self.assertEqual(client.session.registry.pending_count(), 0)
        self.assertEqual(client.session.guard.busy_targets(), ())
        self.assertEqual(rec.calls, 0)

        again = _Recorder()
        self.assertEqual(client.read({"did": "aa:bb", "ch": 5}, again.success, again.error), 400)
        self.assertEqual(client.close(None, again.success, again.error), 400)

    def test_open_twice_is_rejected(self) -> None:
        client, _ = _polling_client()
        rec = _Recorder()
        self.assertEqual(client.open(None, rec.success, rec.error), 400)
        self.assertEqual(rec.errors, [{"result": 400}])


class PubSubClientTests(unittest.TestCase):
    def test_open_waits_for_broker_subscriptions(self) -> None:
        broker = _FakeBrokerChannel()
        client = GatewayClient(ClientConfig(), http_channel=_FakeHttpChannel(), pubsub_channel=broker)
        client.session.apply_credentials(user="user", tid="7", token="tok", gwid="gw1")
        opened = _Recorder()
        client.open(None, opened.success, opened.error)
        self.assertIs(client.state, SessionState.OPENING)
        self.assertEqual(client.read({"did": "aa:bb", "ch": 5}, opened.success, opened.error), 400)

        broker.establish()
        self.assertIs(client.state, SessionState.OPEN)
        self.assertIs(client.session.transport, TransportKind.PUBSUB)
        self.assertEqual(opened.ok, [{}])

    def test_refused_subscription_leaves_the_session_closed(self) -> None:
        broker = _FakeBrokerChannel()
        client = GatewayClient(ClientConfig(), http_channel=_FakeHttpChannel(), pubsub_channel=broker)
        client.session.apply_credentials(user="user", tid="7", token="tok", gwid="gw1")
        first = _Recorder()
        client.open(None, first.success, first.error)
        broker.on_established()
        broker.subscriptions[0](False)
        self.assertEqual(first.errors[0]["result"], 400)
        self.assertIs(client.state, SessionState.CLOSED)
        self.assertTrue(broker.closed)

        broker.subscriptions.clear()
        again = _Recorder()
        self.assertEqual(client.open(None, again.success, again.error), 200)
        self.assertIs(client.state, SessionState.OPENING)
        self.assertEqual(again.calls, 0)

        broker.establish()
        self.assertEqual(len(broker.subscriptions), 4)
        self.assertEqual(again.ok, [{}])
        self.assertIs(client.state, SessionState.OPEN)

    def test_disconnect_event_unlocks_device_for_new_connect(self) -> None:
        client, broker = _pubsub_client()
        first = _Recorder()
        self.assertEqual(client.connect({"did": "aa:bb"}, first.success, first.error), 200)
        self.assertEqual(client.connect({"did": "aa:bb"}, first.success, first.error), 409)

        broker.deliver({"result": 200, "event": 1, "node": "aa:bb"})
        self.assertFalse(client.session.guard.is_busy("aa:bb"))

        second = _Recorder()
        self.assertEqual(client.connect({"did": "aa:bb"}, second.success, second.error), 200)
        self.assertEqual(broker.published[-1][1]["node"], "aa:bb")

    def test_subscribe_completes_after_stream_toggle(self) -> None:
        client, broker = _pubsub_client()
        rec = _Recorder()
        client.subscribe({"did": "aa:bb", "ch": 5, "notify": 1}, rec.success, rec.error)
        broker.deliver({"result": 200, "node": "aa:bb"})
        self.assertEqual(rec.calls, 0)
        self.assertTrue(client.session.guard.is_busy("aa:bb"))

        broker.deliver({"result": 200, "node": "aa:bb"})
        self.assertEqual(len(rec.ok), 1)
        self.assertFalse(client.session.guard.is_busy("aa:bb"))
        self.assertEqual([m["c"] for _, m in broker.published], [18, 27])

    def test_connection_loss_fails_gateway_wide_request(self) -> None:
        client, broker = _pubsub_client()
        scan = _Recorder()
        client.scan({"period": 5}, scan.success, scan.error)

        broker.on_lost("socket closed")
        self.assertEqual(scan.errors[0]["result"], GapiStatus.NO_CONNECTION)
        self.assertFalse(client.session.guard.is_busy(None))

        later = _Recorder()
        self.assertEqual(client.version({}, later.success, later.error), 200)
        self.assertEqual(later.errors[0]["result"], 504)

    def test_close_resets_session(self) -> None:
        client, broker = _pubsub_client()
        rec = _Recorder()
        client.read({"did": "aa:bb", "ch": 5}, rec.success, rec.error)
        closed = _Recorder()
        client.close(None, closed.success, closed.error)
        self.assertTrue(broker.closed)
        self.assertEqual(closed.ok, [{}])
        self.assertIs(client.state, SessionState.CLOSED)
        self.assertEqual(client.session.guard.busy_targets(), ())


class ConfigTests(unittest.TestCase):
    def test_config_updates_fields_and_credentials_while_closed(self) -> None:
        client = GatewayClient(http_channel=_FakeHttpChannel())
        self.assertTrue(client.config(host="10.0.0.2", transport="http", user="user", token="tok"))
        self.assertEqual(client.session.config.host, "10.0.0.2")
        self.assertIs(client.session.config.transport, TransportKind.POLLING)
        self.assertTrue(client.is_auth())

    def test_config_rejects_bad_values(self) -> None:
        client = GatewayClient(http_channel=_FakeHttpChannel())
        self.assertFalse(client.config())
        self.assertFalse(client.config(transport="carrier-pigeon"))
        self.assertFalse(client.config(colour="blue"))
        self.assertFalse(client.config(gwid="gw9"))

    def test_config_is_refused_while_open(self) -> None:
        client, _ = _polling_client()
        self.assertFalse(client.config(host="10.0.0.2"))


class AccountTests(unittest.TestCase):
    def test_login_stores_token_and_gateway_ids(self) -> None:
        http = _FakeHttpChannel()
        client = GatewayClient(http_channel=http)
        rec = _Recorder()
        client.login({"user": "user", "pwd": "secret"}, rec.success, rec.error)
        post = http.last(Endpoint.LOGIN)
        self.assertEqual(post.form, {"user": "user", "pwd": "secret"})

        post.on_response({"result": 200, "tid": "7", "token": "tok", "gwid": ["gw1", "gw2"]})
        self.assertEqual(len(rec.ok), 1)
        session = client.session
        self.assertEqual((session.user, session.tid, session.token, session.gwid), ("user", "7", "tok", "gw1"))
        self.assertEqual((session.gapi_user, session.gapi_pwd), ("user", "tok"))
        self.assertTrue(session.logged_in)

        self.assertFalse(client.config(gwid="gw3"))
        self.assertTrue(client.config(gwid="gw2"))
        self.assertEqual(session.gwid, "gw2")

    def test_login_without_token_fails(self) -> None:
        http = _FakeHttpChannel()
        client = GatewayClient(http_channel=http)
        rec = _Recorder()
        client.login({"user": "user", "pwd": "wrong"}, rec.success, rec.error)
        http.last(Endpoint.LOGIN).on_response({"result": 401})
        self.assertEqual(rec.errors, [{"result": 401}])
        self.assertFalse(client.is_auth())

    def test_logout_requires_login_and_clears_token(self) -> None:
        http = _FakeHttpChannel()
        client = GatewayClient(http_channel=http)
        rec = _Recorder()
        self.assertEqual(client.logout({}, rec.success, rec.error), 401)

        client.login({"user": "user", "pwd": "secret"}, rec.success, rec.error)
        http.last(Endpoint.LOGIN).on_response({"result": 200, "token": "tok", "gwid": "gw1"})
        client.logout({}, rec.success, rec.error)
        post = http.last(Endpoint.LOGOUT)
        self.assertEqual(post.form["token"], "tok")
        post.on_response({"result": 200})
        self.assertIsNone(client.session.token)
        self.assertFalse(client.session.logged_in)

    def test_local_auth_check(self) -> None:
        client = GatewayClient(http_channel=_FakeHttpChannel())
        rec = _Recorder()
        self.assertEqual(client.auth({}, rec.success, rec.error), 401)
        client.session.apply_credentials(user="user", tid="7", token="tok", gwid="gw1")
        self.assertEqual(client.auth({}, rec.success, rec.error), 200)
        self.assertEqual(rec.ok[-1], {"tid": "7", "token": "tok", "gwid": "gw1"})

    def test_remote_auth_without_token_is_401(self) -> None:
        http = _FakeHttpChannel()
        client = GatewayClient(http_channel=http)
        rec = _Recorder()
        client.auth({"user": "user", "pwd": "secret"}, rec.success, rec.error)
        http.last(Endpoint.AUTH).on_response({"result": 200})
        self.assertEqual(rec.errors, [{"result": 401}])

    def test_gateway_status_queries(self) -> None:
        http = _FakeHttpChannel()
        client = GatewayClient(http_channel=http)
        rec = _Recorder()
        client.online({"gwid": "gw1"}, rec.success, rec.error)
        client.registered({"gwid": "gw1"}, rec.success, rec.error)
        client.existing({"gwid": "gw1"}, rec.success, rec.error)
        posts = [p for p in http.posts if p.endpoint == Endpoint.GATEWAY.value]
        self.assertEqual([p.form["c"] for p in posts], ["connected", "registered_this", "registered_other"])

        posts[0].on_response({"result": 200, "online": True})
        posts[1].on_response({"result": 403})
        self.assertEqual(len(rec.ok), 1)
        self.assertEqual(rec.errors, [{"result": 403}])
