"""
Postgresql Reconciler - per-record control logic.

Brings one Postgresql record and its Pod into agreement per call and tells
the caller when to call again. Every step is idempotent and recomputed from
the store, so an invocation interrupted between any two store calls is
completed by the next one.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from backoff import Backoff
from models import (
    NamespacedName,
    ObjectReference,
    PgPhase,
    Pod,
    PodPhase,
    Postgresql,
)
from podspec import build_pod
from store import AlreadyExistsError, ResourceStore

logger = logging.getLogger(__name__)

FINALIZER = "database.db.example.vmware.com/finalizer"
DEFAULT_REQUEUE_INTERVAL = 2.0


@dataclass
class ReconcileResult:
    """Result from a reconcile() call."""

    success: bool = False
    message: str = ""
    requeue_after: Optional[float] = None
    error: Optional[Exception] = None


def derive_phase(pod_phase: Optional[str]) -> PgPhase:
    """
    Map an observed Pod phase onto the record phase.

    Only Pending and Running are distinguished; everything else, including
    a missing pod or an unknown phase, is Failed.
    """
    if pod_phase == PodPhase.PENDING.value:
        return PgPhase.PENDING
    if pod_phase == PodPhase.RUNNING.value:
        return PgPhase.UP
    return PgPhase.FAILED


class Reconciler:
    """
    Reconciles Postgresql records against their Pods.

    Holds no state shared between identities apart from the per-identity
    create-failure counters used for backoff. Callers must not invoke
    ``reconcile`` concurrently for the same identity.
    """

    def __init__(
        self,
        store: ResourceStore,
        requeue_interval: float = DEFAULT_REQUEUE_INTERVAL,
        finalizer: str = FINALIZER,
        backoff: Optional[Backoff] = None,
    ):
        self.store = store
        self.requeue_interval = requeue_interval
        self.finalizer = finalizer
        self.backoff = backoff or Backoff()

    async def reconcile(self, key: NamespacedName) -> ReconcileResult:
        """
        Reconcile a single record.

        Args:
            key: Namespace and name of the Postgresql record.

        Returns:
            ReconcileResult with the requeue delay, or the error that
            stopped this invocation.
        """
        try:
            pg = await self.store.get_postgresql(key)
        except Exception as e:
            logger.error(f"Could not retrieve Postgresql {key}: {e}")
            return ReconcileResult(message="Fetch failed", error=e)

        if pg is None:
            # Fully deleted after the finalizer was released
            self.backoff.reset(key)
            logger.debug(f"Postgresql {key} not found, nothing to do")
            return ReconcileResult(success=True, message="Not found")

        if pg.is_terminating:
            return await self.finalize(pg)

        if self.finalizer not in pg.finalizers:
            pg.finalizers.append(self.finalizer)
            try:
                await self.store.update_postgresql_metadata(pg)
            except Exception as e:
                logger.error(f"Could not add finalizer to {key}: {e}")
                return ReconcileResult(message="Adding finalizer failed", error=e)
            logger.info(f"Added finalizer {self.finalizer} to {key}")

        try:
            pod, requeue_after = await self._ensure_pod(pg)
        except Exception as e:
            logger.error(f"Could not retrieve Pod {key}: {e}")
            return ReconcileResult(message="Pod lookup failed", error=e)

        observed = pod.phase if pod else None
        pg.status.phase = derive_phase(observed)
        pg.status.active = (
            ObjectReference(kind="Pod", namespace=pod.namespace, name=pod.name)
            if pod
            else None
        )
        logger.info(f"Status {key}: pod phase {observed}, pg phase {pg.status.phase.value}")

        try:
            await self.store.update_postgresql_status(pg)
        except Exception as e:
            logger.warning(f"Could not update status of {key}: {e}")

        return ReconcileResult(
            success=True,
            message=f"Phase {pg.status.phase.value}",
            requeue_after=requeue_after,
        )

    async def _ensure_pod(self, pg: Postgresql) -> Tuple[Optional[Pod], float]:
        """
        Return the record's Pod, creating it when absent.

        A failed create is not fatal: the pod stays absent and the returned
        requeue delay backs off per identity.
        """
        key = pg.identity
        pod = await self.store.get_pod(key)
        if pod is not None:
            self.backoff.reset(key)
            return pod, self.requeue_interval

        try:
            pod = await self.store.create_pod(build_pod(pg))
        except AlreadyExistsError:
            logger.info(f"Pod {key} already exists")
            return await self.store.get_pod(key), self.requeue_interval
        except Exception as e:
            delay = self.backoff.failure(key)
            logger.error(
                f"Could not create Pod {key} "
                f"(attempt {self.backoff.failures(key)}), retrying in {delay:.1f}s: {e}"
            )
            return None, delay

        self.backoff.reset(key)
        logger.info(f"Created Pod {key}")
        return pod, self.requeue_interval

    async def finalize(self, pg: Postgresql) -> ReconcileResult:
        """
        Clean up a terminating record.

        The Pod is deleted and confirmed gone before the finalizer is
        released. Any failure leaves the finalizer in place so the store
        keeps the record until a later call succeeds.
        """
        key = pg.identity
        if self.finalizer not in pg.finalizers:
            return ReconcileResult(success=True, message="Finalizer already removed")

        try:
            if await self.store.delete_pod(key):
                logger.info(f"Deleted Pod {key}")
            if await self.store.get_pod(key) is not None:
                logger.info(f"Waiting for Pod {key} to terminate")
                return ReconcileResult(
                    success=True,
                    message="Waiting for pod termination",
                    requeue_after=self.requeue_interval,
                )
        except Exception as e:
            logger.error(f"Could not delete Pod {key}: {e}")
            return ReconcileResult(message="Pod deletion failed", error=e)

        pg.finalizers = [f for f in pg.finalizers if f != self.finalizer]
        try:
            await self.store.update_postgresql_metadata(pg)
        except Exception as e:
            logger.error(f"Could not remove finalizer from {key}: {e}")
            return ReconcileResult(message="Removing finalizer failed", error=e)

        self.backoff.reset(key)
        logger.info(f"Removed finalizer {self.finalizer} from {key}")
        return ReconcileResult(success=True, message="Finalized")
