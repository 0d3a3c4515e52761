"""Mutating admission webhook for cert-manager CSI volume injection.

This webhook intercepts Deployment and StatefulSet admission and makes sure
managed workloads mount a cert-manager CSI volume in every container.
"""

import base64
import copy
import json
import logging
import time
from typing import Any, Dict, List, Optional

import jsonpatch

from cert_manager_csi_operator.config import CsiDriverConfig
from cert_manager_csi_operator.errors import AdmissionDecodeError, ConfigError
from cert_manager_csi_operator.metrics import metrics
from cert_manager_csi_operator.mutation import mutate

logger = logging.getLogger(__name__)

DEPLOYMENT = "Deployment"
STATEFULSET = "StatefulSet"


class CertManagerWebhookController:
    """Mutating admission webhook controller for apps/v1 workloads."""

    def __init__(self, config: CsiDriverConfig):
        self.config = config

    def mutate_deployment(self, admission_request: Dict[str, Any]) -> Dict[str, Any]:
        """Handle an admission request for a Deployment."""
        return self.mutate_workload(admission_request, DEPLOYMENT)

    def mutate_statefulset(self, admission_request: Dict[str, Any]) -> Dict[str, Any]:
        """Handle an admission request for a StatefulSet."""
        return self.mutate_workload(admission_request, STATEFULSET)

    def mutate_workload(self, admission_request: Dict[str, Any], kind: str) -> Dict[str, Any]:
        """Mutate a workload's pod template if it is managed.

        Args:
            admission_request: Kubernetes admission request
            kind: Expected kind of the request object

        Returns:
            Dict containing admission response, with patches when the object changed
        """
        start = time.monotonic()
        uid = admission_request.get("uid", "")
        logger.info(f"Webhook called for {kind} with UID: {uid}")

        try:
            original = self._decode_object(admission_request, kind)
        except AdmissionDecodeError as e:
            logger.error(f"Failed to decode {kind}: {e}")
            metrics.record_error("decode", "webhook")
            return self._finish(kind, "bad_request", start, self.deny_response(str(e), uid, code=400))

        obj = copy.deepcopy(original)
        metadata = obj.get("metadata") or {}
        logger.info(
            f"Webhook processing {kind}: {metadata.get('name', 'unknown')} "
            f"in namespace: {metadata.get('namespace', '')}"
        )

        try:
            managed = mutate(self.config, metadata, obj["spec"]["template"]["spec"])
        except ConfigError as e:
            logger.error(f"Failed to mutate {kind}: {e}")
            metrics.record_error("config", "webhook")
            return self._finish(kind, "errored", start, self.deny_response(f"Mutation failed: {e}", uid, code=500))

        metrics.record_mutation(kind, managed)

        patches = jsonpatch.JsonPatch.from_diff(original, obj).patch
        if not patches:
            return self._finish(kind, "allowed", start, self.allow_response("No changes required", uid))

        logger.info(f"Patching {kind} {metadata.get('name', 'unknown')} with {len(patches)} operation(s)")
        return self._finish(
            kind, "patched", start, self.mutate_response(patches, "Ensured cert-manager CSI volume", uid)
        )

    def _decode_object(self, admission_request: Dict[str, Any], kind: str) -> Dict[str, Any]:
        obj = admission_request.get("object")
        if not isinstance(obj, dict):
            raise AdmissionDecodeError("admission request has no object")

        object_kind = obj.get("kind")
        if object_kind is not None and object_kind != kind:
            raise AdmissionDecodeError(f"expected kind {kind}, got {object_kind}")

        pod_spec = ((obj.get("spec") or {}).get("template") or {}).get("spec")
        if not isinstance(pod_spec, dict):
            raise AdmissionDecodeError(f"{kind} has no pod template spec")

        return obj

    def _finish(self, kind: str, status: str, start: float, response: Dict[str, Any]) -> Dict[str, Any]:
        metrics.record_webhook_request(kind, status, time.monotonic() - start)
        return response

    def allow_response(self, message: str, uid: str = "") -> Dict[str, Any]:
        """Generate admission response that allows the object unchanged."""
        return {
            "apiVersion": "admission.k8s.io/v1",
            "kind": "AdmissionReview",
            "response": {"uid": uid, "allowed": True, "status": {"message": message}},
        }

    def mutate_response(self, patches: List[Dict[str, Any]], message: str, uid: str = "") -> Dict[str, Any]:
        """Generate admission response with mutations."""
        patch_bytes = json.dumps(patches).encode()
        patch_b64 = base64.b64encode(patch_bytes).decode()

        return {
            "apiVersion": "admission.k8s.io/v1",
            "kind": "AdmissionReview",
            "response": {
                "uid": uid,
                "allowed": True,
                "patchType": "JSONPatch",
                "patch": patch_b64,
                "status": {"message": message},
            },
        }

    def deny_response(self, message: str, uid: str = "", code: Optional[int] = None) -> Dict[str, Any]:
        """Generate admission response that denies the object."""
        status: Dict[str, Any] = {"message": message}
        if code is not None:
            status["code"] = code
        return {
            "apiVersion": "admission.k8s.io/v1",
            "kind": "AdmissionReview",
            "response": {"uid": uid, "allowed": False, "status": status},
        }
