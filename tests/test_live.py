import socketio

from symptomap.live import WebSocketService, CONNECTION_FAILED, SERVER_DISCONNECT


class FakeClient:
    """Stands in for socketio.Client; `fail` makes connect() raise."""

    def __init__(self, fail=False):
        self.fail = fail
        self.handlers = {}
        self.emitted = []
        self.connected = False
        self.sid = None
        self.connect_kwargs = None

    def on(self, event, handler):
        self.handlers[event] = handler

    def connect(self, url, **kwargs):
        self.connect_kwargs = {"url": url, **kwargs}
        if self.fail:
            raise socketio.exceptions.ConnectionError("refused")
        self.connected = True
        self.sid = "sid-1"
        self.handlers["connect"]()

    def disconnect(self):
        self.connected = False

    def emit(self, event, *args):
        self.emitted.append((event, *args))

    def call(self, event, timeout=None):
        self.emitted.append((event,))
        return None

    def server_drops(self, reason=SERVER_DISCONNECT):
        self.connected = False
        self.handlers["disconnect"](reason)


class Factory:
    def __init__(self, *fail_flags):
        self.fail_flags = list(fail_flags)
        self.clients = []

    def __call__(self):
        client = FakeClient(fail=self.fail_flags.pop(0) if self.fail_flags else True)
        self.clients.append(client)
        return client


def make_service(factory):
    delays = []

    def schedule(delay_ms, fn):
        delays.append(delay_ms)
        fn()

    return WebSocketService("http://symptomap.test", sio_factory=factory, schedule=schedule), delays


def test_reconnect_backs_off_five_times_then_fails():
    factory = Factory(False)
    service, delays = make_service(factory)
    failures = []
    service.on(CONNECTION_FAILED, failures.append)

    service.connect()
    factory.clients[0].server_drops()

    assert delays == [1000, 2000, 4000, 8000, 16000]
    assert failures == ["Max reconnection attempts reached"]
    assert len(factory.clients) == 6


def test_successful_reconnect_resets_attempts():
    factory = Factory(False, True, True, False)
    service, delays = make_service(factory)

    service.connect()
    factory.clients[0].server_drops()
    assert delays == [1000, 2000, 4000]
    assert service.reconnect_attempts == 0
    assert service.is_connected

    factory.fail_flags = [False]
    factory.clients[-1].server_drops()
    assert delays[3:] == [1000]


def test_client_initiated_disconnect_does_not_reconnect():
    factory = Factory(False)
    service, delays = make_service(factory)
    service.connect()
    factory.clients[0].server_drops(socketio.Client.reason.CLIENT_DISCONNECT)
    factory.clients[0].server_drops(socketio.Client.reason.TRANSPORT_ERROR)
    assert delays == []


def test_library_reconnection_is_not_used_and_token_is_sent():
    class Store:
        def get(self):
            return "tok"

    factory = Factory(False)
    service = WebSocketService("http://symptomap.test", token_store=Store(), sio_factory=factory)
    service.connect()
    kwargs = factory.clients[0].connect_kwargs
    assert kwargs["auth"] == {"token": "tok"}
    assert kwargs["transports"] == ["websocket"]
    assert service.connection_id == "sid-1"


def test_default_factory_disables_library_reconnect():
    from symptomap.live import _default_client
    client = _default_client()
    assert client.reconnection is False


def test_handlers_are_isolated_and_removable():
    factory = Factory(False)
    service, _ = make_service(factory)
    service.connect()
    seen = []

    def broken(_):
        raise RuntimeError("handler bug")

    service.on("outbreak:created", broken)
    service.on("outbreak:created", seen.append)
    factory.clients[0].handlers["outbreak:created"]({"id": "o1"})
    assert seen == [{"id": "o1"}]

    service.off("outbreak:created", seen.append)
    factory.clients[0].handlers["outbreak:created"]({"id": "o2"})
    assert seen == [{"id": "o1"}]


def test_outgoing_events():
    factory = Factory(False)
    service, _ = make_service(factory)
    bounds = {"north": 1, "south": 0, "east": 1, "west": 0}

    service.subscribe_to_map(bounds)  # not connected yet: dropped
    service.connect()
    service.subscribe_to_map(bounds)
    service.request_prediction(bounds)
    service.unsubscribe_from_map()

    assert factory.clients[0].emitted == [
        ("map:subscribe", bounds), ("prediction:request", bounds), ("map:unsubscribe",)]


def test_ping():
    factory = Factory(False)
    service, _ = make_service(factory)
    assert service.ping() == -1
    service.connect()
    assert service.ping() >= 0
    service.disconnect()
    assert service.ping() == -1
    assert not service.is_connected


class OfflineClient(socketio.Client):
    """Real socketio.Client whose connect() skips the network handshake."""

    def connect(self, url, **kwargs):
        self.namespaces = {"/": "sid-1"}
        self.sid = "sid-1"
        self.connected = True
        self._trigger_event("connect", "/")


def test_server_disconnect_packet_from_real_client_starts_backoff():
    clients = []

    def factory():
        clients.append(OfflineClient(reconnection=False))
        return clients[-1]

    delays = []
    service = WebSocketService("http://symptomap.test", sio_factory=factory,
                               schedule=lambda delay_ms, fn: delays.append(delay_ms))
    seen = []
    service.on("outbreak:created", seen.append)

    service.connect()
    clients[0]._handle_event("/", None, ["outbreak:created", {"id": "o1"}])
    assert seen == [{"id": "o1"}]

    clients[0]._handle_disconnect("/")
    assert delays == [1000]
    assert service.reconnect_attempts == 1


def test_failed_reconnect_drops_the_dead_handle():
    factory = Factory(False)
    delays = []
    pending = []
    service = WebSocketService("http://symptomap.test", sio_factory=factory,
                               schedule=lambda delay_ms, fn: (delays.append(delay_ms), pending.append(fn)))
    service.connect()
    factory.clients[0].server_drops()
    pending.pop()()

    assert delays == [1000, 2000]
    assert service.connection_id is None
    assert not service.is_connected
