from .directory import User, Department
from .change_request import ChangeRequest, DepartmentApproval
from .history import EditHistoryEntry, StatusChange
from .notification import Notification, NotificationType
from .sequence import SequenceCounter

__all__ = [
    "User",
    "Department",
    "ChangeRequest",
    "DepartmentApproval",
    "EditHistoryEntry",
    "StatusChange",
    "Notification",
    "NotificationType",
    "SequenceCounter",
]
