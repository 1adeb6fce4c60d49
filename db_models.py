from pydantic import BaseModel
from typing import Literal, Optional, List


LinkPrecedence = Literal["primary", "secondary"]


class Contact(BaseModel):
    id: int
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = "primary"
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    deletedAt: Optional[str] = None

class DisjointSetRow(BaseModel):
    rootId: int
    members: List[int]
    version: int = 0

class IdentifyRequest(BaseModel):
    email: Optional[str] = None
    phoneNumber: Optional[str] = None

class ContactResponse(BaseModel):
    primaryContactId: int
    emails: List[str]
    phoneNumbers: List[str]
    secondaryContactIds: List[int]

class FinalResponse(BaseModel):
    contact: ContactResponse

class AddContactRequest(BaseModel):
    id: Optional[int] = None
    email: Optional[str] = None
    phoneNumber: Optional[str] = None
    linkedId: Optional[int] = None
    linkPrecedence: LinkPrecedence = "primary"

class AddContactResponse(BaseModel):
    message: str
    contact_id: int
