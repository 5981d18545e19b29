"""
Unit tests for the per-connection session registry.
"""

import pytest

from rtspproxy.exceptions import NoUpstreamConfig
from rtspproxy.session import ProxySession, SessionRegistry


class TestProxySession:
    """Tests for ProxySession."""

    def test_client_is_lazy(self, client_config, factory):
        """Test that the upstream client is built on first access only."""
        session = ProxySession(client_config, "rtsp://proxy/media", factory)
        assert factory.created == []

        client = session.rtsp_client
        assert session.rtsp_client is client
        assert len(factory.created) == 1
        assert client.uri == "rtsp://proxy/media"
        assert client.opts == client_config

    def test_close_without_client(self, client_config, factory):
        """Test closing a session whose client was never built."""
        ProxySession(client_config, "rtsp://proxy/media", factory).close()
        assert factory.created == []

    def test_close_closes_client(self, client_config, factory):
        """Test that closing the session closes the upstream connection."""
        session = ProxySession(client_config, "rtsp://proxy/media", factory)
        session.rtsp_client.open()
        session.close()
        assert factory.client.closed is True


class TestSessionRegistry:
    """Tests for SessionRegistry.get_or_create."""

    def test_created_once(self, registry):
        """Test that later requests get the same session and URI."""
        first = registry.get_or_create("rtsp://proxy/first")
        second = registry.get_or_create("rtsp://proxy/second")

        assert first is second
        assert second.media_uri == "rtsp://proxy/first"

    def test_config_passed_through(self, registry, client_config):
        """Test that the configuration reaches the session unmodified."""
        session = registry.get_or_create("rtsp://proxy/media")
        assert session.client_opts == client_config

    def test_explicit_config(self, factory):
        """Test configuration supplied per call."""
        registry = SessionRegistry(client_factory=factory)
        session = registry.get_or_create("rtsp://proxy/media", {"address": "camera"})
        assert session.client_opts == {"address": "camera"}

    def test_no_config(self, factory):
        """Test that a missing configuration is fatal."""
        registry = SessionRegistry(None, factory)
        with pytest.raises(NoUpstreamConfig):
            registry.get_or_create("rtsp://proxy/media")
        assert registry.session is None

    def test_close(self, registry, factory):
        """Test closing the registry drops the session."""
        registry.get_or_create("rtsp://proxy/media").rtsp_client
        registry.close()

        assert registry.session is None
        assert factory.client.closed is True
