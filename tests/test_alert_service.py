from unittest.mock import AsyncMock, MagicMock, Mock, patch

import pytest

from replyflow.services.alert_service import alert_error, alert_warning, send_alert


@pytest.fixture
def alert_env(monkeypatch):
    monkeypatch.setenv("ALERT_BOT_TOKEN", "test-token")
    monkeypatch.setenv("ALERT_CHAT_ID", "test-chat")


def _mock_client(mock_client_class, status_code=200):
    mock_client = MagicMock()
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_client.post = AsyncMock(return_value=mock_response)
    mock_client_class.return_value.__aenter__.return_value = mock_client
    return mock_client


class TestSendAlert:
    @pytest.mark.asyncio
    async def test_returns_false_when_not_configured(self, mock_env):
        result = await send_alert("ERROR", "Test message")
        assert result is False

    @pytest.mark.asyncio
    @patch("replyflow.services.alert_service.httpx.AsyncClient")
    async def test_sends_alert_to_telegram(self, mock_client_class, alert_env):
        mock_client = _mock_client(mock_client_class)

        result = await send_alert("ERROR", "Test error message")

        assert result is True
        mock_client.post.assert_called_once()

        call_args = mock_client.post.call_args
        assert "api.telegram.org" in call_args[0][0]
        json_data = call_args[1]["json"]
        assert json_data["chat_id"] == "test-chat"
        assert "ERROR" in json_data["text"]

    @pytest.mark.asyncio
    @patch("replyflow.services.alert_service.httpx.AsyncClient")
    async def test_includes_context_in_message(self, mock_client_class, alert_env):
        mock_client = _mock_client(mock_client_class)

        await send_alert("ERROR", "Test message", {"tenant_id": "shop", "error": "test error"})

        json_data = mock_client.post.call_args[1]["json"]
        assert "tenant_id" in json_data["text"]
        assert "shop" in json_data["text"]

    @pytest.mark.asyncio
    @patch("replyflow.services.alert_service.httpx.AsyncClient")
    async def test_returns_false_on_http_error(self, mock_client_class, alert_env):
        _mock_client(mock_client_class, status_code=500)

        assert await send_alert("ERROR", "Test") is False

    @pytest.mark.asyncio
    @patch("replyflow.services.alert_service.httpx.AsyncClient")
    async def test_returns_false_on_exception(self, mock_client_class, alert_env):
        mock_client = _mock_client(mock_client_class)
        mock_client.post.side_effect = Exception("Network error")

        assert await send_alert("ERROR", "Test") is False


class TestAlertHelpers:
    @pytest.mark.asyncio
    @patch("replyflow.services.alert_service.send_alert", new_callable=AsyncMock)
    async def test_alert_error(self, mock_send):
        mock_send.return_value = True

        await alert_error("Error message", {"key": "value"})

        mock_send.assert_called_once_with("ERROR", "Error message", {"key": "value"})

    @pytest.mark.asyncio
    @patch("replyflow.services.alert_service.send_alert", new_callable=AsyncMock)
    async def test_alert_warning(self, mock_send):
        await alert_warning("Warning message")

        mock_send.assert_called_once_with("WARNING", "Warning message", None)
