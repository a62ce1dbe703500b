"""Audit event taxonomy.

Every `AuditEventType` maps to exactly one routing key (`entity.action`, lowercase,
dot-segmented) and one entity-type label. Both tables are checked for totality at
import time, so adding a variant without mapping it fails fast.
"""

from __future__ import annotations

from enum import Enum

from workforce_audit.core.errors import UnknownEventType


class AuditEventType(str, Enum):
    # Employee
    EMPLOYEE_CREATED = "EmployeeCreated"
    EMPLOYEE_UPDATED = "EmployeeUpdated"
    EMPLOYEE_DELETED = "EmployeeDeleted"

    # Project
    PROJECT_CREATED = "ProjectCreated"
    PROJECT_UPDATED = "ProjectUpdated"
    PROJECT_DELETED = "ProjectDeleted"
    PROJECT_MEMBER_ADDED = "ProjectMemberAdded"
    PROJECT_MEMBER_REMOVED = "ProjectMemberRemoved"

    # Task
    TASK_CREATED = "TaskCreated"
    TASK_UPDATED = "TaskUpdated"
    TASK_DELETED = "TaskDeleted"
    TASK_STATUS_UPDATED = "TaskStatusUpdated"

    # Leave request
    LEAVE_REQUEST_CREATED = "LeaveRequestCreated"
    LEAVE_REQUEST_UPDATED = "LeaveRequestUpdated"
    LEAVE_REQUEST_APPROVED = "LeaveRequestApproved"
    LEAVE_REQUEST_REJECTED = "LeaveRequestRejected"
    LEAVE_REQUEST_CANCELLED = "LeaveRequestCancelled"

    # Department
    DEPARTMENT_CREATED = "DepartmentCreated"
    DEPARTMENT_UPDATED = "DepartmentUpdated"
    DEPARTMENT_DELETED = "DepartmentDeleted"

    # Designation
    DESIGNATION_CREATED = "DesignationCreated"
    DESIGNATION_UPDATED = "DesignationUpdated"
    DESIGNATION_DELETED = "DesignationDeleted"

    @property
    def routing_key(self) -> str:
        return routing_key(self)

    @property
    def entity_type(self) -> str:
        return entity_type(self)

    @classmethod
    def from_routing_key(cls, key: str) -> "AuditEventType":
        try:
            return _BY_ROUTING_KEY[key]
        except KeyError:
            raise UnknownEventType(key) from None


ROUTING_KEYS: dict[AuditEventType, str] = {
    AuditEventType.EMPLOYEE_CREATED: "employee.created",
    AuditEventType.EMPLOYEE_UPDATED: "employee.updated",
    AuditEventType.EMPLOYEE_DELETED: "employee.deleted",
    AuditEventType.PROJECT_CREATED: "project.created",
    AuditEventType.PROJECT_UPDATED: "project.updated",
    AuditEventType.PROJECT_DELETED: "project.deleted",
    AuditEventType.PROJECT_MEMBER_ADDED: "project.member.added",
    AuditEventType.PROJECT_MEMBER_REMOVED: "project.member.removed",
    AuditEventType.TASK_CREATED: "task.created",
    AuditEventType.TASK_UPDATED: "task.updated",
    AuditEventType.TASK_DELETED: "task.deleted",
    AuditEventType.TASK_STATUS_UPDATED: "task.status.updated",
    AuditEventType.LEAVE_REQUEST_CREATED: "leave.request.created",
    AuditEventType.LEAVE_REQUEST_UPDATED: "leave.request.updated",
    AuditEventType.LEAVE_REQUEST_APPROVED: "leave.request.approved",
    AuditEventType.LEAVE_REQUEST_REJECTED: "leave.request.rejected",
    AuditEventType.LEAVE_REQUEST_CANCELLED: "leave.request.cancelled",
    AuditEventType.DEPARTMENT_CREATED: "department.created",
    AuditEventType.DEPARTMENT_UPDATED: "department.updated",
    AuditEventType.DEPARTMENT_DELETED: "department.deleted",
    AuditEventType.DESIGNATION_CREATED: "designation.created",
    AuditEventType.DESIGNATION_UPDATED: "designation.updated",
    AuditEventType.DESIGNATION_DELETED: "designation.deleted",
}

_ENTITY_MEMBERS: dict[str, tuple[AuditEventType, ...]] = {
    "Employee": (
        AuditEventType.EMPLOYEE_CREATED,
        AuditEventType.EMPLOYEE_UPDATED,
        AuditEventType.EMPLOYEE_DELETED,
    ),
    "Project": (
        AuditEventType.PROJECT_CREATED,
        AuditEventType.PROJECT_UPDATED,
        AuditEventType.PROJECT_DELETED,
        AuditEventType.PROJECT_MEMBER_ADDED,
        AuditEventType.PROJECT_MEMBER_REMOVED,
    ),
    "Task": (
        AuditEventType.TASK_CREATED,
        AuditEventType.TASK_UPDATED,
        AuditEventType.TASK_DELETED,
        AuditEventType.TASK_STATUS_UPDATED,
    ),
    "LeaveRequest": (
        AuditEventType.LEAVE_REQUEST_CREATED,
        AuditEventType.LEAVE_REQUEST_UPDATED,
        AuditEventType.LEAVE_REQUEST_APPROVED,
        AuditEventType.LEAVE_REQUEST_REJECTED,
        AuditEventType.LEAVE_REQUEST_CANCELLED,
    ),
    "Department": (
        AuditEventType.DEPARTMENT_CREATED,
        AuditEventType.DEPARTMENT_UPDATED,
        AuditEventType.DEPARTMENT_DELETED,
    ),
    "Designation": (
        AuditEventType.DESIGNATION_CREATED,
        AuditEventType.DESIGNATION_UPDATED,
        AuditEventType.DESIGNATION_DELETED,
    ),
}

ENTITY_TYPES: dict[AuditEventType, str] = {
    member: label for label, members in _ENTITY_MEMBERS.items() for member in members
}

_BY_ROUTING_KEY: dict[str, AuditEventType] = {key: et for et, key in ROUTING_KEYS.items()}


def _check_totality() -> None:
    for table_name, table in (("ROUTING_KEYS", ROUTING_KEYS), ("ENTITY_TYPES", ENTITY_TYPES)):
        missing = [et.value for et in AuditEventType if not table.get(et)]
        if missing:
            raise RuntimeError(f"{table_name} has no mapping for: {missing}")
    if len(_BY_ROUTING_KEY) != len(ROUTING_KEYS):
        raise RuntimeError("routing keys must be unique per event type")
    for key in ROUTING_KEYS.values():
        if key != key.lower() or "" in key.split("."):
            raise RuntimeError(f"routing key must be lowercase and dot-segmented: {key!r}")


_check_totality()


def routing_key(event_type: AuditEventType) -> str:
    try:
        return ROUTING_KEYS[event_type]
    except (KeyError, TypeError):
        raise UnknownEventType(event_type) from None


def entity_type(event_type: AuditEventType) -> str:
    try:
        return ENTITY_TYPES[event_type]
    except (KeyError, TypeError):
        raise UnknownEventType(event_type) from None


def resolve(event_type: AuditEventType | str) -> AuditEventType:
    """Accept an enum member or its variant name ("EmployeeUpdated")."""
    if isinstance(event_type, AuditEventType):
        return event_type
    try:
        return AuditEventType(event_type)
    except ValueError:
        raise UnknownEventType(event_type) from None
