from typing import List, Optional

from pydantic import BaseModel, validator


class VideoFormat(BaseModel):
    itag: str
    qualityLabel: str
    container: str

    @validator('container')
    def lower_container(cls, v):
        return v.lower()


class VideoInfo(BaseModel):
    success: bool = True
    title: str
    thumbnail: Optional[str] = None
    formats: List[VideoFormat] = []
