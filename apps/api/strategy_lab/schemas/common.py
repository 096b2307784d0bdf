from pydantic import BaseModel
from typing import Generic, TypeVar, List, Optional, Any

T = TypeVar('T')

class ResponseBase(BaseModel, Generic[T]):
    count: int = 0
    items: List[T] = []

class Message(BaseModel):
    message: str

class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    detail: Optional[Any] = None
