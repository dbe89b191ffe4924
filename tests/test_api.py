from types import SimpleNamespace

import pytest
import requests

from api import LedgerRpcClient
from exceptions import LedgerRpcError, TransientLedgerError


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.posts = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.posts.append(json)
        if self.error is not None:
            raise self.error
        return self.response


def _response(status=200, payload=None, text=""):
    def _json():
        if payload is None:
            raise ValueError("no json")
        return payload
    return SimpleNamespace(status_code=status, json=_json, text=text)


def test_result_is_returned():
    session = FakeSession(_response(payload={"jsonrpc": "2.0", "id": 1, "result": {"data": {"type": "0xef::x::Y"}}}))
    client = LedgerRpcClient(url="http://node", session=session)
    assert client.get_object_type("0x1") == "0xef::x::Y"
    assert session.posts[0]["method"] == "sui_getObject"


@pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
def test_retryable_http_status(status):
    client = LedgerRpcClient(url="http://node", session=FakeSession(_response(status=status, text="busy")))
    with pytest.raises(TransientLedgerError) as info:
        client.call("suix_queryEvents", [])
    assert info.value.status_code == status
    assert info.value.retryable is True


@pytest.mark.parametrize("error", [requests.Timeout("slow"), requests.ConnectionError("reset")])
def test_network_errors_are_transient(error):
    client = LedgerRpcClient(url="http://node", session=FakeSession(error=error))
    with pytest.raises(TransientLedgerError):
        client.call("suix_queryEvents", [])


def test_client_errors_are_not_retryable():
    client = LedgerRpcClient(url="http://node", session=FakeSession(_response(status=400, text="bad")))
    with pytest.raises(LedgerRpcError) as info:
        client.call("suix_queryEvents", [])
    assert info.value.retryable is False


def test_rpc_error_object():
    payload = {"jsonrpc": "2.0", "id": 1, "error": {"code": -32602, "message": "Invalid params", "data": "cursor"}}
    client = LedgerRpcClient(url="http://node", session=FakeSession(_response(payload=payload)))
    with pytest.raises(LedgerRpcError) as info:
        client.call("suix_queryEvents", [])
    assert info.value.code == -32602
    assert info.value.data == "cursor"


def test_non_json_body():
    client = LedgerRpcClient(url="http://node", session=FakeSession(_response(payload=None, text="<html>")))
    with pytest.raises(LedgerRpcError):
        client.call("sui_getObject", [])


def test_move_call_without_tx_bytes():
    client = LedgerRpcClient(url="http://node", session=FakeSession(_response(payload={"result": {}})))
    with pytest.raises(LedgerRpcError):
        client.build_move_call("0x1", "0x2", "order_system", "admin_cancel_order", [], 1000)
