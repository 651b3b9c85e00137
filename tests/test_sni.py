"""SNI context selection over applied proxy state."""

import ssl
from types import SimpleNamespace

import pytest

from proxyctl.proxy.sni import SNIContextProvider


@pytest.mark.sni
class TestSNIContextProvider:

    @pytest.mark.asyncio
    async def test_context_for_bound_host(self, controller, route, static_tls):
        await controller.declare(route(tls=static_tls))
        provider = SNIContextProvider(controller.state)

        context = provider.context_for("APP.example")
        assert isinstance(context, ssl.SSLContext)
        assert provider.context_for("app.example") is context

    @pytest.mark.asyncio
    async def test_context_rebuilt_after_certificate_change(self, controller, route, static_tls, self_signed):
        await controller.declare(route(tls=static_tls))
        provider = SNIContextProvider(controller.state)
        first = provider.context_for("app.example")

        cert_pem, key_pem = self_signed("app.example")
        await controller.declare(route(tls={"source": "static", "certificate_pem": cert_pem,
                                            "private_key_pem": key_pem}))
        assert provider.context_for("app.example") is not first

    def test_unknown_host(self, controller):
        provider = SNIContextProvider(controller.state)
        assert provider.context_for("missing.example") is None

        callback = provider.get_sni_callback()
        assert callback(SimpleNamespace(), "missing.example", None) == ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME

    @pytest.mark.asyncio
    async def test_callback_switches_context(self, controller, route, static_tls):
        await controller.declare(route(tls=static_tls))
        provider = SNIContextProvider(controller.state)
        sock = SimpleNamespace(context=None)

        assert provider.get_sni_callback()(sock, "app.example", None) is None
        assert sock.context is provider.context_for("app.example")

    def test_no_server_name_keeps_default(self, controller):
        provider = SNIContextProvider(controller.state)
        sock = SimpleNamespace(context="default")
        assert provider.get_sni_callback()(sock, None, None) is None
        assert sock.context == "default"

    @pytest.mark.asyncio
    async def test_withdrawn_host_loses_context(self, controller, route, static_tls):
        await controller.declare(route(tls=static_tls))
        provider = SNIContextProvider(controller.state)
        provider.context_for("app.example")

        await controller.remove("app.example")
        assert provider.context_for("app.example") is None
        assert "app.example" not in provider.context_cache

    def test_server_context_installs_callback(self, controller):
        provider = SNIContextProvider(controller.state)
        context = provider.server_context()
        assert context.sni_callback is not None
