from .errors import RestoreFailed, RolloutError, SnapshotFailed
from .logger import get_logger


class RollbackManager:
    """Capture the live version before a rollout and put it back afterwards.

    restore() is allowed once per attempt: a rollback that fails is left for
    a human rather than retried against a backend already in a bad state.
    """

    def __init__(self, restore_timeout_s=600.0):
        self.restore_timeout_s = restore_timeout_s
        self.logger = get_logger("rollback")
        self._restores = set()

    async def snapshot(self, backend):
        try:
            version_ref = await backend.get_current_version()
        except RolloutError as e:
            self.logger.error(f"Snapshot of {backend.backend_id} failed: {e}")
            raise SnapshotFailed(f"could not read live version of {backend.backend_id}: {e}") from e
        if not version_ref:
            raise SnapshotFailed(f"{backend.backend_id} reported no live version")
        self.logger.info(f"Snapshot of {backend.backend_id}: {version_ref}")
        return version_ref

    async def restore(self, backend, previous_version_ref, attempt_id=None):
        if attempt_id is not None:
            if attempt_id in self._restores:
                raise RestoreFailed(f"rollback already attempted for {attempt_id}")
            self._restores.add(attempt_id)

        self.logger.warning(f"Restoring {previous_version_ref} on {backend.backend_id}")
        try:
            handle = await backend.deploy_version(previous_version_ref)
            await backend.wait_stable(handle, self.restore_timeout_s)
        except RolloutError as e:
            self.logger.error(f"Restore of {previous_version_ref} on {backend.backend_id} failed: {e}")
            raise RestoreFailed(f"restore of {previous_version_ref} failed: {e}") from e
        self.logger.info(f"Restored {previous_version_ref} on {backend.backend_id}")
        return handle

    def forget(self, attempt_id):
        self._restores.discard(attempt_id)
