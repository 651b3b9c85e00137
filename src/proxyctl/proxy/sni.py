"""SNI-based TLS context selection over the applied proxy state.

Contexts are built lazily from the bindings the convergence engine applied
and cached by certificate fingerprint, so a renewal swaps the context on the
next handshake without restarting listeners.
"""

import os
import ssl
import tempfile
from typing import Dict, Optional, Tuple

from ..certmanager.models import CertificateMaterial
from ..shared.logger import log_debug, log_info, log_trace, log_warning
from .state import ProxyState


class SNIContextProvider:
    """Selects the TLS context for a connection from its SNI name."""

    def __init__(self, state: ProxyState, default_context: Optional[ssl.SSLContext] = None):
        self.state = state
        self.default_context = default_context or ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        self.context_cache: Dict[str, Tuple[str, ssl.SSLContext]] = {}

    def create_ssl_context(self, material: CertificateMaterial) -> ssl.SSLContext:
        """Create an SSL context from certificate material."""
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)

        # load_cert_chain only reads from files
        cert_file = tempfile.NamedTemporaryFile(mode='w', suffix='.pem', delete=False)
        key_file = tempfile.NamedTemporaryFile(mode='w', suffix='.key', delete=False)
        try:
            cert_file.write(material.fullchain_pem)
            cert_file.close()
            key_file.write(material.private_key_pem)
            key_file.close()
            context.load_cert_chain(cert_file.name, key_file.name)
        finally:
            cert_file.close()
            key_file.close()
            os.unlink(cert_file.name)
            os.unlink(key_file.name)

        return context

    def context_for(self, server_name: str) -> Optional[ssl.SSLContext]:
        """Return the context for a host, or None if it has no applied certificate."""
        host = server_name.strip().lower()
        material = self.state.tls_binding(host)
        if material is None:
            self.context_cache.pop(host, None)
            return None

        cached = self.context_cache.get(host)
        if cached and cached[0] == material.fingerprint:
            log_trace(f"Using cached SSL context for {host}", component="sni")
            return cached[1]

        context = self.create_ssl_context(material)
        self.context_cache[host] = (material.fingerprint, context)
        log_info("SSL context loaded", component="sni", host=host, fingerprint=material.fingerprint)
        return context

    def get_sni_callback(self):
        """Returns the SNI callback to install on the listening context."""
        def sni_callback(ssl_socket, server_name: Optional[str], ssl_context):
            if not server_name:
                log_debug("No SNI provided, using default context", component="sni")
                return None

            try:
                context = self.context_for(server_name)
            except (ssl.SSLError, OSError) as e:
                log_warning(f"Failed to load SSL context: {e}", component="sni", host=server_name)
                return ssl.ALERT_DESCRIPTION_INTERNAL_ERROR

            if context is None:
                log_debug("No certificate bound for SNI name", component="sni", host=server_name)
                return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME

            ssl_socket.context = context
            return None

        return sni_callback

    def server_context(self) -> ssl.SSLContext:
        """Default context with the SNI callback installed."""
        self.default_context.sni_callback = self.get_sni_callback()
        return self.default_context
