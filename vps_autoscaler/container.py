#vps_autoscaler\container.py

"""Dependency injection container - wires all services together."""

import socket
from dataclasses import dataclass
from typing import Optional

from vps_autoscaler.config import ControllerSettings
from vps_autoscaler.controller.leader import LeaderElector
from vps_autoscaler.controller.manager import ControllerManager
from vps_autoscaler.controller.reconcilers import (
    NODE,
    NODEGROUP,
    REBALANCE,
    NodeGroupReconciler,
    NodeReconciler,
    RebalanceReconciler,
)
from vps_autoscaler.core.events import LogEventEmitter, MultiEventEmitter
from vps_autoscaler.core.repository import (
    LeaseRepository,
    ManagedNodeRepository,
    NodeGroupRepository,
    RebalanceRepository,
)
from vps_autoscaler.core.state_machine import NodeLifecycleStateMachine
from vps_autoscaler.provider.interface import (
    CheapestOfferingSource,
    CloudProvider,
    ClusterClient,
    OpportunitySource,
    PendingPodSource,
    UtilizationSource,
)
from vps_autoscaler.provider.retry import BackoffPolicy
from vps_autoscaler.rebalancer.analyzer import RebalanceAnalyzer, ScoreWeights
from vps_autoscaler.rebalancer.executor import RebalanceExecutor
from vps_autoscaler.rebalancer.planner import RebalancePlanner
from vps_autoscaler.safety.gate import SafetyGate
from vps_autoscaler.scaler.engine import ScalingDecisionEngine


@dataclass
class Container:
    settings: ControllerSettings
    groups: NodeGroupRepository
    nodes: ManagedNodeRepository
    rebalances: RebalanceRepository
    leases: LeaseRepository
    events: LogEventEmitter
    lifecycle: NodeLifecycleStateMachine
    engine: ScalingDecisionEngine
    executor: RebalanceExecutor
    manager: ControllerManager
    elector: Optional[LeaderElector] = None


# ============================================
# REPOSITORIES
# ============================================

def build_repositories(config: ControllerSettings):
    if config.storage == "memory":
        from vps_autoscaler.infrastructure.memory.repository import (
            InMemoryLeaseRepository,
            InMemoryManagedNodeRepository,
            InMemoryNodeGroupRepository,
            InMemoryRebalanceRepository,
        )

        return (
            InMemoryNodeGroupRepository(),
            InMemoryManagedNodeRepository(),
            InMemoryRebalanceRepository(),
            InMemoryLeaseRepository(),
        )

    from vps_autoscaler.infrastructure.sql.database import create_db_engine, get_session_factory, init_db
    from vps_autoscaler.infrastructure.sql.repository import (
        SQLLeaseRepository,
        SQLManagedNodeRepository,
        SQLNodeGroupRepository,
        SQLRebalanceRepository,
    )

    engine = create_db_engine(config.database_url)
    init_db(engine)
    factory = get_session_factory(engine)
    return (
        SQLNodeGroupRepository(factory),
        SQLManagedNodeRepository(factory),
        SQLRebalanceRepository(factory),
        SQLLeaseRepository(factory),
    )


# ============================================
# EXTERNAL SYSTEMS
# ============================================

def build_provider(config: ControllerSettings) -> CloudProvider:
    from vps_autoscaler.provider.breaker import CircuitBreaker
    from vps_autoscaler.provider.client import VPSProviderClient

    return VPSProviderClient(
        config.provider_base_url,
        config.provider_token,
        timeout=config.provider_timeout_seconds,
        user_agent=config.provider_user_agent,
        instance_quota=config.provider_instance_quota,
        breaker=CircuitBreaker(
            failure_threshold=config.provider_breaker_threshold,
            reset_timeout_seconds=config.provider_breaker_reset_seconds,
        ),
    )


def build_kubernetes(config: ControllerSettings):
    from vps_autoscaler.provider.kubernetes import (
        KubernetesClusterClient,
        KubernetesEventEmitter,
        KubernetesMetricsSource,
        KubernetesPendingPodSource,
        load_kube_config,
    )

    load_kube_config(config.kubeconfig, in_cluster=config.in_cluster)
    return (
        KubernetesClusterClient(),
        KubernetesMetricsSource(),
        KubernetesPendingPodSource(),
        KubernetesEventEmitter(namespace=config.events_namespace),
    )


# ============================================
# SERVICES
# ============================================

def build_container(
    config: ControllerSettings,
    *,
    provider: Optional[CloudProvider] = None,
    cluster: Optional[ClusterClient] = None,
    utilization: Optional[UtilizationSource] = None,
    pending_pods: Optional[PendingPodSource] = None,
    opportunities: Optional[OpportunitySource] = None,
    repositories=None,
) -> Container:
    """
    Wire the controller.

    Anything not passed in is built from `config`: the REST provider, the
    Kubernetes clients, and the repositories selected by `config.storage`.
    """
    groups, nodes, rebalances, leases = repositories or build_repositories(config)

    events = LogEventEmitter(capacity=config.event_buffer_size)
    sinks = [events]
    if cluster is None:
        cluster, k8s_metrics, k8s_pending, k8s_events = build_kubernetes(config)
        utilization = utilization or k8s_metrics
        pending_pods = pending_pods or k8s_pending
        sinks.append(k8s_events)
    emitter = MultiEventEmitter(sinks)

    provider = provider or build_provider(config)
    if utilization is None:
        raise ValueError("a utilization source is required when a cluster client is injected")
    opportunities = opportunities or CheapestOfferingSource(provider)

    backoff = BackoffPolicy(
        base_seconds=config.retry_base_seconds,
        max_seconds=config.retry_max_seconds,
        max_attempts=config.retry_max_attempts,
    )
    gate = SafetyGate(provider, cluster)

    lifecycle = NodeLifecycleStateMachine(
        nodes=nodes,
        groups=groups,
        provider=provider,
        cluster=cluster,
        emitter=emitter,
        backoff=backoff,
        provisioning_timeout_seconds=config.provisioning_timeout_seconds,
        join_timeout_seconds=config.join_timeout_seconds,
        drain_timeout_seconds=config.drain_timeout_seconds,
        default_requeue_seconds=config.default_requeue_seconds,
        fast_requeue_seconds=config.fast_requeue_seconds,
    )
    engine = ScalingDecisionEngine(
        groups=groups,
        nodes=nodes,
        rebalances=rebalances,
        lifecycle=lifecycle,
        provider=provider,
        gate=gate,
        utilization=utilization,
        emitter=emitter,
        pending_pods=pending_pods,
        default_requeue_seconds=config.default_requeue_seconds,
    )
    executor = RebalanceExecutor(
        groups=groups,
        nodes=nodes,
        rebalances=rebalances,
        lifecycle=lifecycle,
        cluster=cluster,
        gate=gate,
        emitter=emitter,
        backoff=backoff,
        fast_requeue_seconds=config.fast_requeue_seconds,
        default_requeue_seconds=config.default_requeue_seconds,
    )
    analyzer = RebalanceAnalyzer(
        gate,
        ScoreWeights(
            age=config.score_age_weight,
            savings=config.score_savings_weight,
            safety_penalty=config.score_safety_penalty,
        ),
    )

    elector = None
    if config.leader_election:
        elector = LeaderElector(
            leases=leases,
            identity=config.identity or socket.gethostname(),
            lease_name=config.lease_name,
            lease_duration_seconds=config.lease_duration_seconds,
            renew_interval_seconds=config.lease_renew_interval_seconds,
        )

    manager = ControllerManager(
        groups=groups,
        nodes=nodes,
        reconcilers={
            NODEGROUP: NodeGroupReconciler(engine=engine, nodes=nodes),
            NODE: NodeReconciler(lifecycle=lifecycle, nodes=nodes),
            REBALANCE: RebalanceReconciler(
                groups=groups,
                nodes=nodes,
                rebalances=rebalances,
                opportunities=opportunities,
                analyzer=analyzer,
                planner=RebalancePlanner(),
                executor=executor,
                emitter=emitter,
                idle_requeue_seconds=config.rebalance_idle_requeue_seconds,
            ),
        },
        elector=elector,
        workers=config.workers,
        default_requeue_seconds=config.default_requeue_seconds,
        fast_requeue_seconds=config.fast_requeue_seconds,
        reconcile_deadline_seconds=config.reconcile_deadline_seconds,
        shutdown_grace_seconds=config.shutdown_grace_seconds,
        resync_interval_seconds=config.resync_interval_seconds,
    )

    return Container(
        settings=config,
        groups=groups,
        nodes=nodes,
        rebalances=rebalances,
        leases=leases,
        events=events,
        lifecycle=lifecycle,
        engine=engine,
        executor=executor,
        manager=manager,
        elector=elector,
    )
