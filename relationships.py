"""
Task <-> User assignment bookkeeping.

RelationshipSync is the only writer of the denormalized relationship
fields: Task.assignedUser, Task.assignedUserName and User.pendingTasks.
It keeps them consistent with this rule:

    a task id is in user.pendingTasks  <=>  task.assignedUser == user.id
                                            and task.completed is False

and assignedUserName always mirrors the assigned user's name (or
"unassigned").

Every public operation is an ordered list of idempotent sub-operations
(bulk unassign, cross-user pull, per-task assign, ...). The store gives no
multi-document transactions, so a sequence that fails halfway stops where
it failed: earlier steps stay applied and nothing is rolled back. Running
the same operation again converges to the consistent state.
"""
import functools
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Tuple

from bson import ObjectId

from database import TASKS, USERS, as_object_id, is_valid_id
from outcomes import InvalidIdentifier, NotFound

logger = logging.getLogger(__name__)

UNASSIGNED_NAME = "unassigned"
UNASSIGNED = {"assignedUser": "", "assignedUserName": UNASSIGNED_NAME}

Step = Tuple[str, Callable[[], Awaitable[Any]]]


class RelationshipSync:
    def __init__(self, db):
        self.users = db[USERS]
        self.tasks = db[TASKS]

    # -----------------------------
    # Set-based sub-operations
    # -----------------------------
    async def unassign_all_except(self, user_id: str, keep_ids: List[ObjectId]) -> int:
        """
        Unassign every open task held by `user_id` whose id is not in
        `keep_ids`. Affects all matching tasks; completed tasks keep their
        assignee.
        """
        query: Dict[str, Any] = {"assignedUser": user_id, "completed": False}
        if keep_ids:
            query["_id"] = {"$nin": keep_ids}
        res = await self.tasks.update_many(query, {"$set": dict(UNASSIGNED)})
        logger.debug("unassign_all_except user=%s kept=%d modified=%s", user_id, len(keep_ids), res.modified_count)
        return res.modified_count

    async def clear_assignee(self, user_id: str) -> int:
        """Unassign every task held by `user_id`, completed or not."""
        res = await self.tasks.update_many({"assignedUser": user_id}, {"$set": dict(UNASSIGNED)})
        logger.debug("clear_assignee user=%s modified=%s", user_id, res.modified_count)
        return res.modified_count

    async def rename_assignee(self, user: Dict[str, Any]) -> int:
        res = await self.tasks.update_many(
            {"assignedUser": str(user["_id"])},
            {"$set": {"assignedUserName": user["name"]}},
        )
        return res.modified_count

    async def pull_pending(self, user_id: str, task_id: str) -> None:
        oid = as_object_id(user_id)
        if oid is None:
            logger.warning("pull_pending skipped, malformed user id=%r task=%s", user_id, task_id)
            return
        await self.users.update_one({"_id": oid}, {"$pull": {"pendingTasks": task_id}})

    async def add_pending(self, user_id: str, task_id: str) -> None:
        oid = as_object_id(user_id)
        if oid is None:
            logger.warning("add_pending skipped, malformed user id=%r task=%s", user_id, task_id)
            return
        await self.users.update_one({"_id": oid}, {"$addToSet": {"pendingTasks": task_id}})

    async def assign(self, task: Dict[str, Any], user: Dict[str, Any]) -> None:
        fields = {"assignedUser": str(user["_id"]), "assignedUserName": user["name"]}
        await self.tasks.update_one({"_id": task["_id"]}, {"$set": fields})
        task.update(fields)

    async def _run(self, operation: str, steps: List[Step]) -> None:
        for position, (name, step) in enumerate(steps, start=1):
            try:
                await step()
            except Exception:
                logger.error(
                    "%s: step %d/%d (%s) failed; %d earlier steps stay applied",
                    operation, position, len(steps), name, position - 1,
                )
                raise

    # -----------------------------
    # Operations
    # -----------------------------
    async def apply_assignments(self, user: Dict[str, Any], requested_task_ids: Iterable[Any]) -> None:
        """
        Make `requested_task_ids` the exact set of tasks assigned to `user`.

        Tasks are taken from whoever held them before. `user["pendingTasks"]`
        is set to the requested ids that are not completed; the caller
        persists the user afterwards.
        """
        user_id = str(user["_id"])
        task_ids = list(dict.fromkeys(str(i) for i in requested_task_ids))

        if not task_ids:
            await self.unassign_all_except(user_id, [])
            user["pendingTasks"] = []
            return

        for task_id in task_ids:
            if not is_valid_id(task_id):
                raise InvalidIdentifier("Invalid task id")

        oids = [ObjectId(t) for t in task_ids]
        loaded = await self.tasks.find({"_id": {"$in": oids}}).to_list(length=None)
        if len(loaded) != len(task_ids):
            raise NotFound("One or more tasks were not found while updating pending tasks.")
        by_id = {str(t["_id"]): t for t in loaded}
        tasks = [by_id[t] for t in task_ids]

        steps: List[Step] = [
            ("unassign_all_except", functools.partial(self.unassign_all_except, user_id, oids)),
        ]
        for task in tasks:
            previous = task.get("assignedUser") or ""
            if previous and previous != user_id:
                steps.append(("pull_pending", functools.partial(self.pull_pending, previous, str(task["_id"]))))
            steps.append(("assign", functools.partial(self.assign, task, user)))
        await self._run("apply_assignments", steps)

        user["pendingTasks"] = [str(t["_id"]) for t in tasks if not t.get("completed")]
        logger.info("user %s now holds %d tasks, %d pending", user_id, len(tasks), len(user["pendingTasks"]))

    async def on_task_assigned(self, task: Dict[str, Any], previous_user_id: str, new_user_id: str) -> None:
        """Bring pendingTasks in line after a task was created or updated."""
        task_id = str(task["_id"])
        steps: List[Step] = []
        if previous_user_id and previous_user_id != new_user_id:
            steps.append(("pull_pending", functools.partial(self.pull_pending, previous_user_id, task_id)))

        if new_user_id and task.get("completed"):
            steps.append(("pull_pending", functools.partial(self.pull_pending, new_user_id, task_id)))
        elif new_user_id:
            steps.append(("add_pending", functools.partial(self.add_pending, new_user_id, task_id)))
        await self._run("on_task_assigned", steps)

    async def on_user_renamed(self, user: Dict[str, Any]) -> None:
        await self._run("on_user_renamed", [("rename_assignee", functools.partial(self.rename_assignee, user))])

    async def on_task_deleted(self, task: Dict[str, Any]) -> None:
        if task.get("assignedUser"):
            await self.pull_pending(task["assignedUser"], str(task["_id"]))

    async def on_user_deleted(self, user: Dict[str, Any]) -> None:
        """Unassign the user's tasks. Tasks themselves are never deleted."""
        await self.clear_assignee(str(user["_id"]))
