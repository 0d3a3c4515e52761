"""Tests for the webhook server and kopf lifecycle handlers."""

import base64
import datetime
import json
import ssl
from unittest.mock import AsyncMock, MagicMock, Mock, patch

import aiohttp
import kopf
import pytest
from aiohttp.test_utils import TestClient, TestServer, unused_port
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from cert_manager_csi_operator.config import DEFAULTS, ServerConfig
from cert_manager_csi_operator.controllers.webhook_controller import CertManagerWebhookController
from cert_manager_csi_operator.errors import ScopeUnsetError
from cert_manager_csi_operator.operator import (
    DEPLOYMENT_PATH,
    STATEFULSET_PATH,
    build_app,
    cleanup_handler,
    create_ssl_context,
    health_status,
    run,
    start_webhook_server,
    startup_handler,
)


@pytest.fixture
def config():
    return DEFAULTS.model_copy(update={"issuer_name": "ca-issuer"})


@pytest.fixture
def controller(config):
    return CertManagerWebhookController(config)


def admission_review(kind, annotations=None, uid="uid-1"):
    return {
        "apiVersion": "admission.k8s.io/v1",
        "kind": "AdmissionReview",
        "request": {
            "uid": uid,
            "object": {
                "kind": kind,
                "metadata": {"name": "app", "namespace": "default", "annotations": annotations or {}},
                "spec": {"template": {"spec": {"containers": [{"name": "main", "image": "nginx"}]}}},
            },
        },
    }


class TestWebhookServer:
    """Test the aiohttp admission routes."""

    @pytest.mark.asyncio
    async def test_deployment_route(self, controller):
        async with TestClient(TestServer(build_app(controller))) as client:
            resp = await client.post(
                DEPLOYMENT_PATH, json=admission_review("Deployment", {"op.csi.cert-manager.io": "true"})
            )
            assert resp.status == 200
            body = await resp.json()

        assert body["response"]["uid"] == "uid-1"
        assert body["response"]["allowed"] is True
        patches = json.loads(base64.b64decode(body["response"]["patch"]))
        assert any(p["path"] == "/spec/template/spec/volumes" for p in patches)

    @pytest.mark.asyncio
    async def test_statefulset_route(self, controller):
        async with TestClient(TestServer(build_app(controller))) as client:
            resp = await client.post(STATEFULSET_PATH, json=admission_review("StatefulSet"))
            body = await resp.json()

        assert body["response"]["allowed"] is True
        assert "patch" not in body["response"]

    @pytest.mark.asyncio
    async def test_wrong_route_for_kind(self, controller):
        async with TestClient(TestServer(build_app(controller))) as client:
            resp = await client.post(STATEFULSET_PATH, json=admission_review("Deployment"))
            body = await resp.json()

        assert body["response"]["allowed"] is False
        assert body["response"]["status"]["code"] == 400

    @pytest.mark.asyncio
    async def test_malformed_body(self, controller):
        async with TestClient(TestServer(build_app(controller))) as client:
            resp = await client.post(DEPLOYMENT_PATH, data="not json")
            assert resp.status == 200
            body = await resp.json()

        assert body["response"]["allowed"] is False
        assert body["response"]["status"]["code"] == 400

    @pytest.mark.asyncio
    async def test_missing_request(self, controller):
        async with TestClient(TestServer(build_app(controller))) as client:
            resp = await client.post(DEPLOYMENT_PATH, json={"kind": "AdmissionReview"})
            body = await resp.json()

        assert body["response"]["allowed"] is False
        assert "Malformed admission review" in body["response"]["status"]["message"]

    @pytest.mark.asyncio
    async def test_unexpected_error(self, controller):
        with patch.object(controller, "mutate_deployment", side_effect=RuntimeError("boom")):
            async with TestClient(TestServer(build_app(controller))) as client:
                resp = await client.post(DEPLOYMENT_PATH, json=admission_review("Deployment"))
                assert resp.status == 500
                body = await resp.json()

        assert body["response"]["uid"] == "uid-1"
        assert body["response"]["allowed"] is False
        assert "Webhook error: boom" in body["response"]["status"]["message"]

    @pytest.mark.asyncio
    async def test_healthz(self, controller):
        async with TestClient(TestServer(build_app(controller))) as client:
            resp = await client.get("/healthz")
            body = await resp.json()

        assert body == {"status": "healthy"}


class TestLifecycleHandlers:
    """Test kopf startup, cleanup and probe handlers."""

    @pytest.mark.asyncio
    @patch("cert_manager_csi_operator.operator.metrics")
    @patch("cert_manager_csi_operator.operator.start_webhook_server", new_callable=AsyncMock)
    async def test_startup_starts_server(self, mock_start, mock_metrics, config):
        runner = MagicMock()
        mock_start.return_value = runner
        memo = kopf.Memo(config=config, server_config=ServerConfig(metrics_port=9090))

        await startup_handler(settings=kopf.OperatorSettings(), memo=memo, logger=Mock())

        mock_metrics.start_metrics_server.assert_called_once_with(port=9090)
        mock_metrics.record_operator_restart.assert_called_once()
        assert isinstance(memo.controller, CertManagerWebhookController)
        assert memo.controller.config is config
        assert memo.webhook_runner is runner

    @pytest.mark.asyncio
    @patch("cert_manager_csi_operator.operator.metrics")
    @patch("cert_manager_csi_operator.operator.start_webhook_server", new_callable=AsyncMock)
    async def test_startup_without_metrics(self, mock_start, mock_metrics, config):
        memo = kopf.Memo(config=config, server_config=ServerConfig(metrics_port=0))

        await startup_handler(settings=kopf.OperatorSettings(), memo=memo, logger=Mock())

        mock_metrics.start_metrics_server.assert_not_called()

    @pytest.mark.asyncio
    @patch("cert_manager_csi_operator.operator.start_webhook_server", new_callable=AsyncMock)
    async def test_startup_rejects_invalid_config(self, mock_start, config):
        invalid = config.model_copy(update={"namespace": "", "annotation_key": ""})
        memo = kopf.Memo(config=invalid, server_config=ServerConfig())

        with pytest.raises(ScopeUnsetError):
            await startup_handler(settings=kopf.OperatorSettings(), memo=memo, logger=Mock())

        mock_start.assert_not_called()

    @pytest.mark.asyncio
    async def test_cleanup_stops_runner(self):
        runner = MagicMock()
        runner.cleanup = AsyncMock()
        memo = kopf.Memo(webhook_runner=runner)

        await cleanup_handler(memo=memo, logger=Mock())

        runner.cleanup.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cleanup_without_runner(self):
        await cleanup_handler(memo=kopf.Memo(), logger=Mock())

    def test_health_status(self, controller):
        assert health_status(memo=kopf.Memo())["status"] == "unhealthy"
        assert health_status(memo=kopf.Memo(controller=controller))["status"] == "healthy"


@pytest.fixture
def tls_files(tmp_path):
    """Write a throwaway self-signed serving certificate and key."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "localhost")])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=1))
        .not_valid_after(now + datetime.timedelta(days=1))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName("localhost")]), critical=False)
        .sign(key, hashes.SHA256())
    )

    cert_file = tmp_path / "tls.crt"
    key_file = tmp_path / "tls.key"
    cert_file.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
    key_file.write_bytes(
        key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    return str(cert_file), str(key_file)


class TestServing:
    """Test TLS loading, the standalone server start and the kopf entry point."""

    def test_create_ssl_context(self, tls_files):
        cert_file, key_file = tls_files

        ssl_context = create_ssl_context(ServerConfig(tls_cert_file=cert_file, tls_key_file=key_file))

        assert isinstance(ssl_context, ssl.SSLContext)

    def test_create_ssl_context_missing_files(self, tmp_path):
        server_config = ServerConfig(
            tls_cert_file=str(tmp_path / "missing.crt"), tls_key_file=str(tmp_path / "missing.key")
        )

        with pytest.raises(OSError):
            create_ssl_context(server_config)

    @pytest.mark.asyncio
    async def test_start_webhook_server(self, controller, tls_files):
        cert_file, key_file = tls_files
        port = unused_port()
        server_config = ServerConfig(host="127.0.0.1", port=port, tls_cert_file=cert_file, tls_key_file=key_file)

        runner = await start_webhook_server(build_app(controller), server_config)
        try:
            async with aiohttp.ClientSession() as session:
                async with session.get(f"https://127.0.0.1:{port}/healthz", ssl=False) as resp:
                    assert resp.status == 200
                    assert await resp.json() == {"status": "healthy"}
        finally:
            await runner.cleanup()

    @patch("cert_manager_csi_operator.operator.kopf.run")
    def test_run_hands_config_to_kopf(self, mock_kopf_run, config):
        server_config = ServerConfig(port=9443)

        run(config, server_config, liveness_endpoint="http://0.0.0.0:8080/healthz")

        mock_kopf_run.assert_called_once()
        kwargs = mock_kopf_run.call_args[1]
        assert kwargs["standalone"] is True
        assert kwargs["clusterwide"] is True
        assert kwargs["liveness_endpoint"] == "http://0.0.0.0:8080/healthz"
        assert kwargs["memo"].config is config
        assert kwargs["memo"].server_config is server_config
