from pydantic import BaseModel


class AttachmentOut(BaseModel):
    url: str
    key: str
    content_type: str
    size: int

    model_config = {"from_attributes": True}
