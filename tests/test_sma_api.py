"""
SMA web API client tests.
"""
from unittest.mock import Mock

import pytest
import requests

from sma_api import ChannelValue, FailureKind, SMAWebAPI


def http_response(status_code=200, body=None):
  response = Mock()
  response.status_code = status_code
  if isinstance(body, Exception):
    response.json.side_effect = body
  else:
    response.json.return_value = body
  return response


@pytest.fixture
def http():
  return Mock(spec=requests.Session)


@pytest.fixture
def api(http):
  return SMAWebAPI(host="sma.local", username="user", password="secret", timeout=5, session=http)


class TestLogin:
  """login tests."""

  def test_login_returns_token(self, api, http):
    http.request.return_value = http_response(body={"access_token": "abc", "token_type": "bearer"})

    result = api.login()

    assert result.ok
    assert result.data == "abc"
    http.request.assert_called_once_with(
      "POST", "https://sma.local/api/v1/token", timeout=5,
      data={"grant_type": "password", "username": "user", "password": "secret"},
      headers={"Accept": "application/json, text/plain, */*"})

  def test_login_without_token_is_auth_failure(self, api, http):
    http.request.return_value = http_response(body={"error": "invalid_grant"})

    result = api.login()

    assert not result.ok
    assert result.failure is FailureKind.AUTH

  def test_login_rejected(self, api, http):
    http.request.return_value = http_response(status_code=401)

    assert api.login().failure is FailureKind.AUTH

  def test_login_unreachable(self, api, http):
    http.request.side_effect = requests.exceptions.ConnectionError("no route to host")

    assert api.login().failure is FailureKind.TRANSIENT


class TestRequestFailures:
  """Classification of failed requests."""

  @pytest.mark.parametrize("status_code, failure", [
    (401, FailureKind.AUTH),
    (403, FailureKind.AUTH),
    (500, FailureKind.TRANSIENT),
    (503, FailureKind.TRANSIENT),
    (404, FailureKind.PROTOCOL),
    (302, FailureKind.PROTOCOL),
  ])
  def test_http_status(self, api, http, status_code, failure):
    http.request.return_value = http_response(status_code=status_code)

    assert api.fetch_live("token").failure is failure

  def test_timeout_is_transient(self, api, http):
    http.request.side_effect = requests.exceptions.Timeout("read timed out")

    result = api.fetch_live("token")

    assert result.failure is FailureKind.TRANSIENT
    assert "timeout" in result.reason

  def test_invalid_json_is_protocol_failure(self, api, http):
    http.request.return_value = http_response(body=ValueError("Expecting value"))

    assert api.fetch_live("token").failure is FailureKind.PROTOCOL


class TestFetchLive:
  """fetch_live tests."""

  def test_request(self, api, http):
    http.request.return_value = http_response(body=[])

    api.fetch_live("abc")

    http.request.assert_called_once_with(
      "POST", "https://sma.local/api/v1/measurements/live", timeout=5,
      json=[{"componentId": "IGULD:SELF"}],
      headers={"Authorization": "Bearer abc"})

  def test_record(self, api, http):
    http.request.return_value = http_response(body=[
      {"channelId": "Measurement.GridMs.TotW.Pv", "componentId": "IGULD:SELF", "values": [{"value": 2345.6}]},
      {"channelId": "Measurement.GridMs.TotA", "values": [{"time": "2024-05-01T12:00:00Z"}]},
      {"channelId": "Measurement.GridMs.PhV.phsA", "values": []},
      {"channelId": "Measurement.Operation.Health", "values": [{"value": "Ok"}]},
    ])

    result = api.fetch_live("abc")

    assert result.ok
    assert result.data == [
      ChannelValue("Measurement.GridMs.TotW.Pv", 2345.6),
      ChannelValue("Measurement.GridMs.TotA", None),
      ChannelValue("Measurement.GridMs.PhV.phsA", None),
      ChannelValue("Measurement.Operation.Health", None),
    ]

  def test_unexpected_body_is_protocol_failure(self, api, http):
    http.request.return_value = http_response(body={"channels": []})

    assert api.fetch_live("abc").failure is FailureKind.PROTOCOL

  def test_entry_without_channel_id_is_skipped(self, api, http):
    http.request.return_value = http_response(body=[
      {"values": [{"value": 1}]},
      {"channelId": 17, "values": [{"value": 2}]},
      "Measurement.GridMs.TotA",
      {"channelId": "Measurement.GridMs.TotW.Pv", "values": [{"value": 2345.6}]},
    ])

    result = api.fetch_live("abc")

    assert result.ok
    assert result.data == [ChannelValue("Measurement.GridMs.TotW.Pv", 2345.6)]


class TestFetchMetadata:

  def test_metadata(self, api, http):
    http.request.return_value = http_response(body={"product": "STP 10.0-3SE-40", "serial": "3012345678"})

    result = api.fetch_metadata("abc")

    assert result.data["serial"] == "3012345678"
    http.request.assert_called_once_with(
      "GET", "https://sma.local/api/v1/plants/Plant:1/devices/IGULD:SELF", timeout=5,
      headers={"Authorization": "Bearer abc"})


def test_tls_verification_configurable(http):
  SMAWebAPI(host="sma.local", username="user", password="secret", verify_tls=True, session=http)
  assert http.verify is True

  SMAWebAPI(host="sma.local", username="user", password="secret", session=http)
  assert http.verify is False
