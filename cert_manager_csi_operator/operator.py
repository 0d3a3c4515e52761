"""Operator runtime: kopf lifecycle handlers and the admission webhook server."""

import logging
import ssl
from typing import Any, Dict, Optional

import kopf
from aiohttp import web

from cert_manager_csi_operator.config import CsiDriverConfig, ServerConfig
from cert_manager_csi_operator.controllers.webhook_controller import CertManagerWebhookController
from cert_manager_csi_operator.metrics import metrics

logger = logging.getLogger(__name__)

DEPLOYMENT_PATH = "/mutate-v1-deployment"
STATEFULSET_PATH = "/mutate-v1-statefulset"


def build_app(controller: CertManagerWebhookController) -> web.Application:
    """Create the aiohttp application serving the admission webhooks."""

    def admission_handler(mutate):
        async def handler(request: web.Request) -> web.Response:
            try:
                body = await request.json()
                admission_request = body["request"]
                if not isinstance(admission_request, dict):
                    raise TypeError("request must be an object")
            except (ValueError, KeyError, TypeError) as e:
                logger.error(f"Malformed admission review on {request.path}: {e}")
                return web.json_response(controller.deny_response(f"Malformed admission review: {e}", code=400))

            try:
                return web.json_response(mutate(admission_request))
            except Exception as e:
                logger.exception(f"Webhook error on {request.path}: {e}")
                metrics.record_error(type(e).__name__, "server")
                return web.json_response(
                    controller.deny_response(f"Webhook error: {e}", admission_request.get("uid", ""), code=500),
                    status=500,
                )

        return handler

    async def healthz(request: web.Request) -> web.Response:
        return web.json_response({"status": "healthy"})

    app = web.Application()
    app.router.add_post(DEPLOYMENT_PATH, admission_handler(controller.mutate_deployment))
    app.router.add_post(STATEFULSET_PATH, admission_handler(controller.mutate_statefulset))
    app.router.add_get("/healthz", healthz)
    logger.info(f"Registered webhooks at {DEPLOYMENT_PATH} and {STATEFULSET_PATH}")
    return app


def create_ssl_context(server_config: ServerConfig) -> ssl.SSLContext:
    """Load the webhook serving certificate."""
    logger.info(f"Loading TLS certificates from {server_config.tls_cert_file}")
    ssl_context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    ssl_context.load_cert_chain(server_config.tls_cert_file, server_config.tls_key_file)
    return ssl_context


async def start_webhook_server(app: web.Application, server_config: ServerConfig) -> web.AppRunner:
    """Start the webhook server on the running event loop."""
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, server_config.host, server_config.port, ssl_context=create_ssl_context(server_config))
    await site.start()
    logger.info(f"Webhook server started on {server_config.host}:{server_config.port} with TLS")
    return runner


def serve(config: CsiDriverConfig, server_config: ServerConfig) -> None:
    """Run the webhook server in the foreground, without kopf."""
    if server_config.metrics_port:
        metrics.start_metrics_server(port=server_config.metrics_port)
    metrics.record_operator_restart()

    app = build_app(CertManagerWebhookController(config))
    web.run_app(
        app,
        host=server_config.host,
        port=server_config.port,
        ssl_context=create_ssl_context(server_config),
        print=None,
    )


@kopf.on.startup()
async def startup_handler(settings: kopf.OperatorSettings, memo: kopf.Memo, logger, **kwargs):
    """Start the webhook server once the operator is up."""
    settings.posting.level = logging.INFO

    config: CsiDriverConfig = memo.config
    server_config: ServerConfig = memo.server_config

    # Fails the startup on an invalid configuration
    config.validate_config()

    if server_config.metrics_port:
        metrics.start_metrics_server(port=server_config.metrics_port)
        logger.info(f"Metrics server started on port {server_config.metrics_port}")
    metrics.record_operator_restart()

    memo.controller = CertManagerWebhookController(config)
    memo.webhook_runner = await start_webhook_server(build_app(memo.controller), server_config)
    logger.info("cert-manager CSI operator started")


@kopf.on.cleanup()
async def cleanup_handler(memo: kopf.Memo, logger, **kwargs):
    """Stop the webhook server."""
    runner: Optional[web.AppRunner] = memo.get("webhook_runner")
    if runner is not None:
        await runner.cleanup()
        logger.info("Webhook server stopped")
    logger.info("cert-manager CSI operator shutdown complete")


@kopf.on.probe(id="status")
def health_status(memo: kopf.Memo, **kwargs) -> Dict[str, Any]:
    """Health probe handler for Kubernetes liveness checks."""
    if memo.get("controller") is None:
        return {"status": "unhealthy", "reason": "webhook not initialized"}
    return {"status": "healthy", "components": {"webhook": "ready"}}


def run(config: CsiDriverConfig, server_config: ServerConfig, liveness_endpoint: Optional[str] = None) -> None:
    """Run the operator under kopf with the given configuration."""
    kopf.run(
        clusterwide=True,
        standalone=True,
        liveness_endpoint=liveness_endpoint,
        memo=kopf.Memo(config=config, server_config=server_config),
    )
