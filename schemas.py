"""
Database Schemas for the Task API

Task and User each map to a MongoDB collection named after the lowercased
class name, e.g. User -> "user". The *Payload models describe request
bodies; they are deliberately loose because clients send booleans, dates
and id lists in several shapes, which the services normalize.
"""
from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


# Stored documents
class Task(BaseModel):
    name: str = Field(..., min_length=1, description="Task name")
    description: str = ""
    deadline: datetime
    completed: bool = False
    assignedUser: str = Field("", description="User id, empty when unassigned")
    assignedUserName: str = "unassigned"


class User(BaseModel):
    name: str = Field(..., min_length=1, description="Full name")
    email: EmailStr = Field(..., description="Unique email")
    pendingTasks: List[str] = Field(default_factory=list, description="Ids of assigned, open tasks")


# Request bodies
class TaskPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    description: Optional[str] = None
    deadline: Any = None
    completed: Any = None
    assignedUser: Optional[str] = None


class UserPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    pendingTasks: Any = None
