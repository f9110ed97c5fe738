"""eks_executor.py — Run Screwdriver builds as pods on an EKS cluster.

start: describe the cluster, create the build pod, return the node it landed
on. stop: delete every pod labelled with the build.
"""
from __future__ import annotations

import base64
import secrets
import threading
from typing import Any, Callable, Dict, List, Optional, Tuple

from botocore.exceptions import BotoCoreError, ClientError
from botocore.signers import RequestSigner

from aws_clients import _get_client, _get_session
from build_message import BuildConfig, BuildConfigError
from config import EKS_EXECUTOR_NAME, logger
from executor_registry import ExecutorError
from kube_client import KubernetesClient, KubernetesError

__all__ = ["EksExecutor", "build_pod_manifest"]

TOKEN_PREFIX = "k8s-aws-v1."
TOKEN_EXPIRES_SECONDS = 60
CLUSTER_ID_HEADER = "x-k8s-aws-id"
DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS = 30
# Same alphabet Kubernetes uses for generated name suffixes.
_POD_SUFFIX_ALPHABET = "bcdfghjklmnpqrstvwxz2456789"

_LAUNCHER_INIT_COMMAND = (
    "echo launcher_start_ts:`date +%s` > /workspace/metrics && "
    "if ! [ -f /opt/launcher/launch ]; then TEMP_DIR=`mktemp -d -p /opt/launcher` && "
    "cp -a /opt/sd/* $TEMP_DIR && mkdir -p $TEMP_DIR/hab && cp -a /hab/* $TEMP_DIR/hab && "
    "mv $TEMP_DIR/* /opt/launcher && rm -rf $TEMP_DIR || true; else ls /opt/launcher; fi; "
    "echo launcher_end_ts:`date +%s` >> /workspace/metrics"
)


def _pod_suffix(length: int = 5) -> str:
    return "".join(secrets.choice(_POD_SUFFIX_ALPHABET) for _ in range(length))


def _setting_str(config: BuildConfig, key: str) -> str:
    return config.setting(key).get_str(key)


def build_label(config: BuildConfig) -> str:
    """``<prefix>-<buildId>``, the sdbuild label shared by all pods of a build."""
    return f"{_setting_str(config, 'prefix')}-{config.build_id}"


def build_pod_manifest(config: BuildConfig, namespace: str) -> Dict[str, Any]:
    """Pod spec for one build; raises BuildConfigError on missing keys."""
    build_id = config.build_id
    label = build_label(config)
    container = config.get_str("container")
    privileged = config.setting("privilegedMode").get_bool("privilegedMode", default=False)
    launcher_image = _setting_str(config, "launcherImage")
    launcher_version = _setting_str(config, "launcherVersion")
    run_args = " ".join(
        [
            "/opt/sd/run.sh",
            config.get_str("token"),
            config.get_str("apiUri"),
            config.get_str("storeUri"),
            str(config.get_int("buildTimeout")),
            str(build_id),
            config.get_str("uiUri"),
        ]
    )

    return {
        "apiVersion": "v1",
        "kind": "Pod",
        "metadata": {
            "name": f"{label}-{_pod_suffix()}",
            "namespace": namespace,
            "labels": {"app": "screwdriver", "tier": "builds", "sdbuild": label},
        },
        "spec": {
            "serviceAccountName": config.get_str("serviceAccountName"),
            "automountServiceAccountToken": True,
            "terminationGracePeriodSeconds": DEFAULT_TERMINATION_GRACE_PERIOD_SECONDS,
            "restartPolicy": "Never",
            "dnsPolicy": "ClusterFirst",
            "containers": [
                {
                    "name": label,
                    "image": container,
                    "imagePullPolicy": "Always",
                    "ports": [{"name": "http", "protocol": "TCP", "containerPort": 80}],
                    "securityContext": {"privileged": privileged},
                    "resources": {
                        "limits": {
                            "cpu": _setting_str(config, "cpuLimit"),
                            "memory": _setting_str(config, "memoryLimit"),
                        }
                    },
                    "env": [
                        {"name": "SD_RUNTIME_CLASS", "value": ""},
                        {"name": "SD_PUSHGATEWAY_URL", "value": ""},
                        {"name": "SD_TERMINATION_GRACE_PERIOD_SECONDS", "value": "60"},
                        {"name": "CONTAINER_IMAGE", "value": container},
                        {"name": "SD_PIPELINE_ID", "value": str(config.get_int("pipelineId"))},
                        {"name": "SD_BUILD_PREFIX", "value": _setting_str(config, "prefix")},
                        {"name": "NODE_ID", "valueFrom": {"fieldRef": {"fieldPath": "spec.nodeName"}}},
                        {"name": "SD_BASE_COMMAND_PATH", "value": "/sd/commands/"},
                        {"name": "SD_TEMP", "value": "/opt/sd_tmp"},
                        {"name": "DOCKER_HOST", "value": "tcp"},
                    ],
                    "command": ["/opt/sd/launcher_entrypoint.sh"],
                    "args": [run_args],
                    "volumeMounts": [
                        {"name": "podinfo", "mountPath": "/etc/podinfo", "readOnly": True},
                        {"name": "screwdriver", "mountPath": "/opt/sd", "readOnly": True},
                        {"name": "sdtemp", "mountPath": "/opt/sd_tmp"},
                        {"name": "workspace", "mountPath": "/workspace"},
                    ],
                }
            ],
            "initContainers": [
                {
                    "name": f"launcher-{label}",
                    "image": launcher_image,
                    "command": ["/bin/sh", "-c", _LAUNCHER_INIT_COMMAND],
                    "volumeMounts": [
                        {"name": "screwdriver", "mountPath": "/opt/launcher"},
                        {"name": "workspace", "mountPath": "/workspace"},
                    ],
                }
            ],
            "volumes": [
                {"name": "screwdriver", "hostPath": {"path": f"/opt/screwdriver/sdlauncher/{launcher_version}"}},
                {"name": "sdtemp", "hostPath": {"path": f"/opt/screwdriver/tmp_{build_id}"}},
                {"name": "workspace", "emptyDir": {}},
                {
                    "name": "podinfo",
                    "downwardAPI": {
                        "items": [
                            {"path": "labels", "fieldRef": {"fieldPath": "metadata.labels"}},
                            {"path": "annotations", "fieldRef": {"fieldPath": "metadata.annotations"}},
                        ]
                    },
                },
            ],
        },
    }


class EksExecutor:
    """Executor ``eks``: cluster endpoints cached, a fresh token per call."""

    name = EKS_EXECUTOR_NAME

    def __init__(
        self,
        region: str,
        *,
        eks_client=None,
        kube_factory: Optional[Callable[[str, str, bytes], KubernetesClient]] = None,
    ):
        self.region = region
        self._eks = eks_client
        self._kube_factory = kube_factory or KubernetesClient
        self._clusters: Dict[str, Tuple[str, bytes, str]] = {}
        self._lock = threading.Lock()

    def _eks_client(self):
        if self._eks is None:
            self._eks = _get_client("eks", self.region)
        return self._eks

    def describe_cluster(self, cluster_name: str) -> Dict[str, Any]:
        if not cluster_name:
            raise BuildConfigError("cluster name is empty")
        try:
            resp = self._eks_client().describe_cluster(name=cluster_name)
        except (BotoCoreError, ClientError) as exc:
            logger.error("DescribeCluster error - %s", exc)
            raise ExecutorError(f"Error calling DescribeCluster: {exc}") from exc
        cluster = (resp or {}).get("cluster")
        if not cluster:
            raise ExecutorError("cluster does not exist")
        return cluster

    def get_token(self, cluster_name: str) -> str:
        """EKS bearer token: a presigned STS GetCallerIdentity URL."""
        session = _get_session()
        sts = _get_client("sts", self.region)
        signer = RequestSigner(
            sts.meta.service_model.service_id,
            self.region,
            "sts",
            "v4",
            session.get_credentials(),
            session.events,
        )
        params = {
            "method": "GET",
            "url": f"https://sts.{self.region}.amazonaws.com/?Action=GetCallerIdentity&Version=2011-06-15",
            "body": {},
            "headers": {CLUSTER_ID_HEADER: cluster_name},
            "context": {},
        }
        url = signer.generate_presigned_url(
            params,
            region_name=self.region,
            expires_in=TOKEN_EXPIRES_SECONDS,
            operation_name="",
        )
        encoded = base64.urlsafe_b64encode(url.encode("utf-8")).decode("utf-8")
        return TOKEN_PREFIX + encoded.rstrip("=")

    def _cluster_endpoint(self, cluster_name: str) -> Tuple[str, bytes, str]:
        """(endpoint, CA bytes, cluster name) from DescribeCluster, cached per cluster."""
        cached = self._clusters.get(cluster_name)
        if cached is not None:
            return cached
        with self._lock:
            cached = self._clusters.get(cluster_name)
            if cached is None:
                cluster = self.describe_cluster(cluster_name)
                logger.info("Cluster Arn: %s", cluster.get("arn"))
                try:
                    ca_data = base64.b64decode(cluster["certificateAuthority"]["data"])
                    endpoint = cluster["endpoint"]
                except (KeyError, TypeError, ValueError) as exc:
                    raise ExecutorError(f"cluster {cluster_name} has no usable endpoint: {exc}") from exc
                cached = (endpoint, ca_data, cluster.get("name") or cluster_name)
                self._clusters[cluster_name] = cached
        return cached

    def kube_client(self, config: BuildConfig) -> KubernetesClient:
        """Client for the build's cluster, carrying a newly minted token."""
        cluster_name = config.setting("clusterName").get_str("clusterName", required=False, default="")
        endpoint, ca_data, token_cluster = self._cluster_endpoint(cluster_name)
        try:
            token = self.get_token(token_cluster)
        except (BotoCoreError, ClientError) as exc:
            raise ExecutorError(f"Error generating cluster token: {exc}") from exc
        return self._kube_factory(endpoint, token, ca_data)

    def _namespace(self, config: BuildConfig) -> str:
        return _setting_str(config, "namespace")

    def start(self, config: BuildConfig) -> str:
        namespace = self._namespace(config)
        pod = build_pod_manifest(config, namespace)
        client = self.kube_client(config)

        logger.info("Creating pod %s in namespace %s", pod["metadata"]["name"], namespace)
        try:
            created = client.create_pod(namespace, pod)
        except KubernetesError as exc:
            raise ExecutorError(f"Error creating pod {exc}") from exc
        pod_name = (created.get("metadata") or {}).get("name") or pod["metadata"]["name"]
        logger.info("Created pod %s", pod_name)

        try:
            current = client.get_pod(namespace, pod_name)
        except KubernetesError as exc:
            logger.warning("Unable to read back pod %s: %s", pod_name, exc)
            return ""
        node_name = (current.get("spec") or {}).get("nodeName") or ""
        logger.info("Node: %s", node_name)
        return node_name

    def stop(self, config: BuildConfig) -> None:
        namespace = self._namespace(config)
        label = build_label(config)
        client = self.kube_client(config)

        try:
            pods = client.list_pods(namespace, label_selector=f"sdbuild={label}")
        except KubernetesError as exc:
            raise ExecutorError(f"failed to get pods {exc}") from exc

        failures: List[str] = []
        for pod in pods:
            name = (pod.get("metadata") or {}).get("name", "")
            logger.info("Deleting pod %s", name)
            try:
                client.delete_pod(namespace, name)
            except KubernetesError as exc:
                logger.error("Failed to delete pod %s: %s", name, exc)
                failures.append(name)
        if failures:
            raise ExecutorError(f"failed to delete pods: {', '.join(failures)}")
