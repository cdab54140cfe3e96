# vps_autoscaler/provider/kubernetes.py
"""Cluster primitives and telemetry backed by the Kubernetes API."""

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.utils import parse_quantity

from vps_autoscaler.core.errors import DrainError, TransientProviderError
from vps_autoscaler.core.events import EventEmitter
from vps_autoscaler.core.events_model import ControllerEvent
from vps_autoscaler.core.models import LABEL_MANAGED, LABEL_NODEGROUP, ManagedNode, NodeGroup
from vps_autoscaler.provider.interface import (
    ClusterClient,
    ClusterHealth,
    PendingPod,
    PendingPodSource,
    UtilizationSample,
    UtilizationSource,
)

logger = logging.getLogger(__name__)


def load_kube_config(kubeconfig: Optional[str] = None, in_cluster: bool = False) -> None:
    if in_cluster:
        k8s_config.load_incluster_config()
    else:
        k8s_config.load_kube_config(config_file=kubeconfig)


def _is_daemonset_pod(pod) -> bool:
    for owner in pod.metadata.owner_references or []:
        if owner.kind == "DaemonSet":
            return True
    return False


def _is_mirror_pod(pod) -> bool:
    return "kubernetes.io/config.mirror" in (pod.metadata.annotations or {})


def _is_finished(pod) -> bool:
    return pod.status is not None and pod.status.phase in ("Succeeded", "Failed")


def _node_ready(node) -> bool:
    for condition in (node.status.conditions or []):
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def _selector_matches(selector, labels: Dict[str, str]) -> bool:
    if selector is None:
        return False
    match_labels = selector.match_labels or {}
    if not match_labels and not selector.match_expressions:
        # empty selector selects every pod in the namespace
        return True
    for key, value in match_labels.items():
        if labels.get(key) != value:
            return False
    for expr in selector.match_expressions or []:
        present = expr.key in labels
        if expr.operator == "In" and labels.get(expr.key) not in (expr.values or []):
            return False
        if expr.operator == "NotIn" and labels.get(expr.key) in (expr.values or []):
            return False
        if expr.operator == "Exists" and not present:
            return False
        if expr.operator == "DoesNotExist" and present:
            return False
    return True


class KubernetesClusterClient(ClusterClient):
    """
    ClusterClient over CoreV1 / PolicyV1.

    Instances join on their own through cloud-init user data; join_cluster
    only labels the expected Node so it can be matched back to its group.
    """

    def __init__(self, core_api: Optional[k8s_client.CoreV1Api] = None, policy_api=None, version_api=None):
        self.core = core_api or k8s_client.CoreV1Api()
        self.policy = policy_api or k8s_client.PolicyV1Api()
        self.version = version_api or k8s_client.VersionApi()

    # -------------------------
    # HELPERS
    # -------------------------

    def _pods_on(self, node_name: str):
        try:
            return self.core.list_pod_for_all_namespaces(
                field_selector=f"spec.nodeName={node_name}"
            ).items
        except ApiException as e:
            raise TransientProviderError(f"listing pods on {node_name} failed: {e.reason}") from e

    def _evictable_pods(self, node_name: str) -> List:
        return [
            pod for pod in self._pods_on(node_name)
            if not _is_daemonset_pod(pod) and not _is_mirror_pod(pod) and not _is_finished(pod)
        ]

    def _patch_unschedulable(self, node_name: str, value: bool) -> None:
        try:
            self.core.patch_node(name=node_name, body={"spec": {"unschedulable": value}})
        except ApiException as e:
            if e.status == 404 and not value:
                return
            raise TransientProviderError(f"patching {node_name} failed: {e.reason}") from e

    # -------------------------
    # LIFECYCLE PRIMITIVES
    # -------------------------

    def join_cluster(self, node: ManagedNode) -> str:
        node_name = node.node_name or node.node_id
        body = {
            "metadata": {
                "labels": {
                    LABEL_NODEGROUP: node.group_name,
                    LABEL_MANAGED: "true",
                }
            }
        }
        try:
            self.core.patch_node(name=node_name, body=body)
        except ApiException as e:
            # kubelet has not registered yet; readiness polling picks it up
            if e.status != 404:
                raise TransientProviderError(f"labeling {node_name} failed: {e.reason}") from e
        return node_name

    def is_node_ready(self, node_name: str) -> bool:
        try:
            node = self.core.read_node(name=node_name)
        except ApiException as e:
            if e.status == 404:
                return False
            raise TransientProviderError(f"reading node {node_name} failed: {e.reason}") from e
        return _node_ready(node)

    def cordon_node(self, node_name: str) -> None:
        self._patch_unschedulable(node_name, True)
        logger.info(f"[k8s] cordoned {node_name}")

    def uncordon_node(self, node_name: str) -> None:
        self._patch_unschedulable(node_name, False)
        logger.info(f"[k8s] uncordoned {node_name}")

    def drain_node(self, node_name: str, timeout_seconds: int, force: bool = False) -> bool:
        pods = self._evictable_pods(node_name)
        if not pods:
            return True

        for pod in pods:
            name, namespace = pod.metadata.name, pod.metadata.namespace
            if pod.metadata.deletion_timestamp is not None:
                continue
            body = k8s_client.V1Eviction(
                metadata=k8s_client.V1ObjectMeta(name=name, namespace=namespace),
                delete_options=k8s_client.V1DeleteOptions(
                    grace_period_seconds=min(timeout_seconds, 30)
                ),
            )
            try:
                self.core.create_namespaced_pod_eviction(name=name, namespace=namespace, body=body)
                logger.info(f"[k8s] evicting {namespace}/{name} from {node_name}")
            except ApiException as e:
                if e.status == 404:
                    continue
                if e.status == 429:
                    if not force:
                        raise DrainError(
                            f"eviction of {namespace}/{name} blocked by a disruption budget"
                        ) from e
                    self.core.delete_namespaced_pod(
                        name=name,
                        namespace=namespace,
                        body=k8s_client.V1DeleteOptions(grace_period_seconds=0),
                    )
                    logger.warning(f"[k8s] force-deleted {namespace}/{name} on {node_name}")
                    continue
                raise DrainError(f"eviction of {namespace}/{name} failed: {e.reason}") from e
        return False

    def delete_node(self, node_name: str) -> None:
        try:
            self.core.delete_node(name=node_name)
        except ApiException as e:
            if e.status != 404:
                raise TransientProviderError(f"deleting node {node_name} failed: {e.reason}") from e

    # -------------------------
    # HEALTH / SAFETY QUERIES
    # -------------------------

    def workloads_healthy(self, node_name: str) -> bool:
        for pod in self._pods_on(node_name):
            if _is_finished(pod):
                continue
            if pod.status is None or pod.status.phase != "Running":
                return False
            for status in pod.status.container_statuses or []:
                if not status.ready:
                    return False
        return True

    def node_has_local_storage(self, node_name: str) -> bool:
        for pod in self._evictable_pods(node_name):
            for volume in pod.spec.volumes or []:
                if volume.empty_dir is not None or volume.host_path is not None:
                    return True
        return False

    def disruption_allowed(self, node_name: str) -> bool:
        pods = self._evictable_pods(node_name)
        namespaces = {pod.metadata.namespace for pod in pods}
        for namespace in namespaces:
            try:
                budgets = self.policy.list_namespaced_pod_disruption_budget(namespace).items
            except ApiException as e:
                raise TransientProviderError(f"listing PDBs in {namespace} failed: {e.reason}") from e
            for pdb in budgets:
                allowed = pdb.status.disruptions_allowed if pdb.status else 0
                if allowed >= 1:
                    continue
                for pod in pods:
                    if pod.metadata.namespace == namespace and _selector_matches(
                        pdb.spec.selector, pod.metadata.labels or {}
                    ):
                        return False
        return True

    def cluster_health(self) -> ClusterHealth:
        try:
            self.version.get_code()
            control_plane = True
        except ApiException as e:
            logger.warning(f"[k8s] control plane check failed: {e.reason}")
            control_plane = False

        try:
            nodes = self.core.list_node().items
        except ApiException as e:
            raise TransientProviderError(f"listing nodes failed: {e.reason}") from e

        ready = sum(1 for node in nodes if _node_ready(node))
        return ClusterHealth(
            control_plane_healthy=control_plane,
            total_nodes=len(nodes),
            ready_nodes=ready,
        )


class KubernetesMetricsSource(UtilizationSource):
    """Node utilization from metrics.k8s.io relative to allocatable capacity."""

    def __init__(self, core_api=None, custom_api=None):
        self.core = core_api or k8s_client.CoreV1Api()
        self.custom = custom_api or k8s_client.CustomObjectsApi()

    def samples(self, nodes: List[ManagedNode]) -> List[UtilizationSample]:
        results = []
        for node in nodes:
            if not node.node_name:
                continue
            try:
                usage = self.custom.get_cluster_custom_object(
                    "metrics.k8s.io", "v1beta1", "nodes", node.node_name
                )["usage"]
                allocatable = self.core.read_node(name=node.node_name).status.allocatable
            except ApiException as e:
                logger.warning(f"[metrics] no sample for {node.node_name}: {e.reason}")
                continue

            cpu = float(parse_quantity(usage["cpu"]) / parse_quantity(allocatable["cpu"])) * 100
            memory = float(parse_quantity(usage["memory"]) / parse_quantity(allocatable["memory"])) * 100
            results.append(UtilizationSample(node_id=node.node_id, cpu_percent=cpu, memory_percent=memory))
        return results


def _unschedulable(pod) -> bool:
    for condition in (pod.status.conditions if pod.status else None) or []:
        if condition.type == "PodScheduled":
            return condition.status == "False" and condition.reason == "Unschedulable"
    return False


def _requests(pod) -> tuple:
    """(cpu cores, memory bytes) requested; init containers run alone so count their max."""
    cpu = 0
    memory = 0
    for container in pod.spec.containers or []:
        requests = (container.resources.requests if container.resources else None) or {}
        cpu += parse_quantity(requests.get("cpu", "0"))
        memory += parse_quantity(requests.get("memory", "0"))
    for container in pod.spec.init_containers or []:
        requests = (container.resources.requests if container.resources else None) or {}
        cpu = max(cpu, parse_quantity(requests.get("cpu", "0")))
        memory = max(memory, parse_quantity(requests.get("memory", "0")))
    return cpu, memory


class KubernetesPendingPodSource(PendingPodSource):
    """Pending pods the scheduler marked Unschedulable."""

    def __init__(self, core_api=None):
        self.core = core_api or k8s_client.CoreV1Api()

    def pending_pods(self, group: NodeGroup) -> List[PendingPod]:
        try:
            pods = self.core.list_pod_for_all_namespaces(field_selector="status.phase=Pending").items
        except ApiException as e:
            raise TransientProviderError(f"listing pending pods failed: {e.reason}") from e

        results = []
        for pod in pods:
            if pod.spec.node_name or pod.metadata.deletion_timestamp is not None:
                continue
            if not _unschedulable(pod):
                continue
            cpu, memory = _requests(pod)
            pending = PendingPod(
                name=pod.metadata.name,
                namespace=pod.metadata.namespace,
                cpu_millicores=int(cpu * 1000),
                memory_mb=int(memory / (1024 * 1024)),
                node_selector=dict(pod.spec.node_selector or {}),
            )
            if pending.fits(group):
                results.append(pending)
        return results


class KubernetesEventEmitter(EventEmitter):
    """Records controller events as core/v1 Events in the given namespace."""

    def __init__(self, namespace: str = "kube-system", core_api=None, component: str = "vps-autoscaler"):
        self.namespace = namespace
        self.component = component
        self.core = core_api or k8s_client.CoreV1Api()

    def emit(self, events: Iterable[ControllerEvent]) -> None:
        for event in events:
            now = datetime.now(timezone.utc)
            body = k8s_client.CoreV1Event(
                metadata=k8s_client.V1ObjectMeta(
                    generate_name=f"{event.object_name}.",
                    namespace=self.namespace,
                ),
                involved_object=k8s_client.V1ObjectReference(
                    kind=event.object_kind,
                    name=event.object_name,
                    namespace=self.namespace,
                ),
                reason=event.reason,
                message=event.message,
                type=event.event_type,
                first_timestamp=now,
                last_timestamp=now,
                count=1,
                source=k8s_client.V1EventSource(component=self.component),
            )
            try:
                self.core.create_namespaced_event(namespace=self.namespace, body=body)
            except ApiException as e:
                logger.warning(f"[k8s] failed to record event {event.reason}: {e.reason}")
