"""Cluster reconciliation.

ClusterReconciler converges one AWSCluster per call:

1. Load the object and resolve its owner cluster by identity
2. Skip paused clusters
3. Run the convergers in dependency order (create path) or in reverse
   dependency order (delete path)
4. Persist status with a compare-and-swap write

Retry, jitter and scheduling belong to the caller. A result carries either
an error, a minimum requeue delay, or neither (done).
"""

from __future__ import annotations

import logging
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from . import conditions
from .bastion import BastionService
from .config import Config
from .errors import ReconcileError, is_failed_dependency
from .events import EventRecorder
from .instancestate import InstanceStateService
from .loadbalancer import LoadBalancerService
from .models import ClusterPhase, FailureDomainSpec
from .network import NetworkService
from .objectstore import ObjectStoreService
from .scope import AWSClients, ClusterScope, new_clients
from .securitygroups import SecurityGroupService
from .store import ConflictError, ObjectStore, StoreError

logger = logging.getLogger(__name__)

# Event reasons
FAILED_RECONCILE = "FailedReconcile"
FAILED_DELETE = "FailedDelete"


def resolve_host(host: str) -> list[str]:
    """Resolve a host name to its addresses.

    Raises:
        OSError: If the name does not resolve.
    """
    return sorted({info[4][0] for info in socket.getaddrinfo(host, None)})


@dataclass
class ServiceFactories:
    """Builds convergers from a scope. Tests substitute fakes here."""

    network: Callable[[ClusterScope], Any] = NetworkService
    security_groups: Callable[[ClusterScope], Any] = SecurityGroupService
    bastion: Callable[[ClusterScope], Any] = BastionService
    load_balancer: Callable[[ClusterScope], Any] = LoadBalancerService
    object_store: Callable[[ClusterScope], Any] = ObjectStoreService
    instance_state: Callable[[ClusterScope], Any] = InstanceStateService


@dataclass
class ReconcileResult:
    """Outcome of a single reconciliation."""

    key: str
    requeue_after: float | None = None
    error: Exception | None = None
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None

    @property
    def done(self) -> bool:
        """Nothing left to do until the object changes."""
        return self.error is None and self.requeue_after is None


class ClusterReconciler:
    """Converges AWSCluster objects onto AWS."""

    def __init__(
        self,
        store: ObjectStore,
        recorder: EventRecorder,
        config: Config,
        clients_factory: Callable[[str], AWSClients] = new_clients,
        service_factories: ServiceFactories | None = None,
        resolver: Callable[[str], list[str]] = resolve_host,
    ) -> None:
        self._store = store
        self._recorder = recorder
        self._config = config
        self._clients_factory = clients_factory
        self._services = service_factories or ServiceFactories()
        self._resolver = resolver
        self._enable_event_notifications = config.enable_event_notifications

    def reconcile(self, key: str) -> ReconcileResult:
        """Reconcile the AWSCluster stored under "namespace/name"."""
        result = ReconcileResult(key=key)
        try:
            self._reconcile(key, result)
        except ConflictError as e:
            # The stored object moved on; the next attempt starts from a fresh read
            logger.info("Object modified concurrently", extra={"object": key, "error": str(e)})
            result.error = e
        except StoreError as e:
            result.error = e
        except Exception as e:
            logger.exception("Unexpected reconciliation error", extra={"object": key, "error": str(e)})
            result.error = e

        result.end_time = datetime.now(UTC)
        self._log_result(result)
        return result

    def _reconcile(self, key: str, result: ReconcileResult) -> None:
        cluster = self._store.get(key)
        if cluster is None:
            logger.info("AWSCluster not found", extra={"object": key})
            return

        owner_ref = cluster.metadata.owner_cluster
        owner = self._store.get_owner(owner_ref) if owner_ref else None
        if owner is None:
            logger.info("Cluster Controller has not yet set OwnerRef", extra={"object": key})
            return

        if owner.paused or cluster.is_paused():
            logger.info("AWSCluster or linked Cluster is marked as paused, won't reconcile", extra={"object": key})
            return

        scope = ClusterScope(
            cluster=cluster,
            owner=owner,
            clients=self._clients_factory(cluster.spec.region),
            config=self._config,
            recorder=self._recorder,
            store=self._store,
        )

        # Status is persisted on every exit; a conflict discards it
        persist = True
        try:
            if cluster.is_deleting():
                self._reconcile_delete(scope, result)
            else:
                self._reconcile_normal(scope, result)
        except ConflictError:
            persist = False
            raise
        finally:
            if persist:
                scope.patch_object()

    # -------------------------------------------------------------------------
    # Create path
    # -------------------------------------------------------------------------

    def _reconcile_normal(self, scope: ClusterScope, result: ReconcileResult) -> None:
        logger.info("Reconciling AWSCluster", extra={"object": scope.cluster.key})
        cluster = scope.cluster

        # The finalizer must be stored before anything is created
        if cluster.add_finalizer():
            scope.patch_object()
            cluster = scope.cluster

        if not cluster.status.ready:
            cluster.status.phase = ClusterPhase.PROVISIONING

        services = self._services

        if not self._step(scope, result, "network", services.network(scope).reconcile_network):
            return

        if not self._step(
            scope,
            result,
            "security groups",
            services.security_groups(scope).reconcile_security_groups,
            conditions.SECURITY_GROUPS_READY,
            conditions.SECURITY_GROUP_RECONCILIATION_FAILED,
        ):
            return
        conditions.mark_true(scope.cluster, conditions.SECURITY_GROUPS_READY)

        if not self._step(
            scope,
            result,
            "bastion",
            services.bastion(scope).reconcile_bastion,
            conditions.BASTION_HOST_READY,
            conditions.BASTION_HOST_FAILED,
        ):
            return
        if scope.cluster.spec.bastion.enabled:
            conditions.mark_true(scope.cluster, conditions.BASTION_HOST_READY)
        else:
            conditions.delete(scope.cluster, conditions.BASTION_HOST_READY)

        if self._enable_event_notifications:
            try:
                services.instance_state(scope).reconcile_ec2_events()
            except Exception as e:
                logger.error(
                    "Failed to reconcile notifications", extra={"object": scope.cluster.key, "error": str(e)}
                )
            else:
                conditions.mark_true(scope.cluster, conditions.INSTANCE_STATE_EVENTS_READY)

        if not self._step(
            scope,
            result,
            "load balancer",
            services.load_balancer(scope).reconcile_load_balancer,
            conditions.LOAD_BALANCER_READY,
            conditions.LOAD_BALANCER_FAILED,
        ):
            return

        if not self._step(
            scope,
            result,
            "object store",
            services.object_store(scope).reconcile_bucket,
            conditions.S3_BUCKET_READY,
            conditions.S3_BUCKET_FAILED,
            severity=conditions.ConditionSeverity.ERROR,
        ):
            return
        if scope.cluster.spec.s3_bucket is not None:
            conditions.mark_true(scope.cluster, conditions.S3_BUCKET_READY)

        if not scope.is_eks_managed() and not self._publish_endpoint(scope, result):
            return

        elb_zones = set(scope.network().api_server_elb.availability_zones)
        for subnet in scope.network().private_subnets():
            scope.set_failure_domain(
                subnet.availability_zone,
                FailureDomainSpec(control_plane=subnet.availability_zone in elb_zones),
            )

        scope.cluster.status.ready = True
        scope.cluster.status.phase = ClusterPhase.READY
        conditions.mark_true(scope.cluster, conditions.READY)
        logger.info("AWSCluster is ready", extra={"object": scope.cluster.key})

    def _publish_endpoint(self, scope: ClusterScope, result: ReconcileResult) -> bool:
        """Wait for a resolvable load balancer name, then publish the endpoint.

        Returns False when the caller should requeue.
        """
        cluster = scope.cluster
        dns_name = scope.network().api_server_elb.dns_name

        if not dns_name:
            conditions.mark_false(
                cluster,
                conditions.LOAD_BALANCER_READY,
                conditions.WAIT_FOR_DNS_NAME,
                conditions.ConditionSeverity.INFO,
            )
            logger.info("Waiting on API server ELB DNS name", extra={"object": cluster.key})
            result.requeue_after = self._config.dns_requeue_seconds
            return False

        try:
            self._resolver(dns_name)
        except OSError as e:
            conditions.mark_false(
                cluster,
                conditions.LOAD_BALANCER_READY,
                conditions.WAIT_FOR_DNS_NAME_RESOLVE,
                conditions.ConditionSeverity.INFO,
            )
            logger.info(
                "Waiting on API server ELB DNS name to resolve",
                extra={"object": cluster.key, "dns_name": dns_name, "error": str(e)},
            )
            result.requeue_after = self._config.dns_requeue_seconds
            return False

        conditions.mark_true(cluster, conditions.LOAD_BALANCER_READY)

        endpoint = cluster.spec.control_plane_endpoint
        if not endpoint.host:
            endpoint.host = dns_name
            endpoint.port = scope.api_server_port()
            logger.info(
                "Published control plane endpoint",
                extra={"object": cluster.key, "host": endpoint.host, "port": endpoint.port},
            )
        return True

    # -------------------------------------------------------------------------
    # Delete path
    # -------------------------------------------------------------------------

    def _reconcile_delete(self, scope: ClusterScope, result: ReconcileResult) -> None:
        logger.info("Reconciling AWSCluster delete", extra={"object": scope.cluster.key})
        cluster = scope.cluster
        cluster.status.phase = ClusterPhase.DELETING
        conditions.mark_false(
            cluster, conditions.READY, conditions.DELETING, conditions.ConditionSeverity.INFO
        )

        services = self._services

        if self._enable_event_notifications:
            try:
                services.instance_state(scope).delete_ec2_events()
            except Exception as e:
                logger.error(
                    "Failed to delete notifications", extra={"object": cluster.key, "error": str(e)}
                )

        steps: list[tuple[str, Callable[[], None]]] = [
            ("load balancer", services.load_balancer(scope).delete_load_balancers),
            ("bastion", services.bastion(scope).delete_bastion),
            ("security groups", services.security_groups(scope).delete_security_groups),
            ("network", services.network(scope).delete_network),
            ("object store", services.object_store(scope).delete_bucket),
        ]
        for name, delete in steps:
            if not self._step(scope, result, name, delete, deleting=True):
                return

        # Everything is gone; the store may now release the object
        scope.cluster.remove_finalizer()
        logger.info("AWSCluster infrastructure deleted", extra={"object": scope.cluster.key})

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _step(
        self,
        scope: ClusterScope,
        result: ReconcileResult,
        name: str,
        run: Callable[[], None],
        condition_type: str | None = None,
        reason: str | None = None,
        deleting: bool = False,
        severity: conditions.ConditionSeverity | None = None,
    ) -> bool:
        """Run one converger step. Returns False if the pipeline must stop.

        The failure condition uses ``severity`` when given, otherwise the
        severity that depends on whether the cluster was ever ready.
        """
        try:
            run()
        except ReconcileError as e:
            cluster = scope.cluster
            if condition_type is not None and reason is not None:
                conditions.mark_false(
                    cluster,
                    condition_type,
                    reason,
                    severity if severity is not None else conditions.error_severity_after_init(cluster),
                    str(e),
                )

            if is_failed_dependency(e):
                logger.info(
                    "Dependency not ready",
                    extra={"object": cluster.key, "step": name, "error": str(e)},
                )
            else:
                logger.error(
                    "Reconciliation step failed",
                    extra={"object": cluster.key, "step": name, "error": str(e)},
                )
                self._recorder.warning(
                    cluster,
                    FAILED_DELETE if deleting else FAILED_RECONCILE,
                    f"Failed to {'delete' if deleting else 'reconcile'} {name} for AWSCluster "
                    f"{cluster.key}: {e}",
                )

            result.error = e
            return False
        return True

    def _log_result(self, result: ReconcileResult) -> None:
        extra: dict[str, Any] = {
            "object": result.key,
            "duration_seconds": result.duration_seconds,
            "requeue_after": result.requeue_after,
        }
        if result.error is not None:
            extra["error"] = str(result.error)
            extra["error_type"] = type(result.error).__name__
            logger.warning("Reconciliation failed", extra=extra)
        elif result.requeue_after is not None:
            logger.info("Reconciliation requeued", extra=extra)
        else:
            logger.info("Reconciliation result", extra=extra)
