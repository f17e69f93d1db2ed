from typing import List, Optional

from pydantic import BaseModel, Field


class ObservationMetadataIn(BaseModel):
    observation_id: str
    user_id: str
    timestamp: str
    skill_path: str
    correct: bool
    board_result: Optional[str] = None  # 'correct' | 'failed' | 'corrected'
    classroom: Optional[str] = None
    deal_subfolder: Optional[str] = None
    deal_number: Optional[int] = None


class EncryptedObservation(BaseModel):
    encrypted_data: str
    iv: str
    metadata: ObservationMetadataIn


class SubmitObservationsRequest(BaseModel):
    observations: List[EncryptedObservation] = Field(default_factory=list)


class SubmitObservationsResponse(BaseModel):
    received: int
    stored: int
    errors: List[str] = Field(default_factory=list)


class ObservationOut(BaseModel):
    id: str
    user_id: str
    timestamp: str
    skill_path: str
    correct: bool
    board_result: Optional[str] = None
    classroom: Optional[str] = None
    deal_subfolder: Optional[str] = None
    deal_number: Optional[int] = None
    encrypted_data: str
    iv: str
    created_at: str


class ObservationMetadataOut(BaseModel):
    observation_id: str
    user_id: str
    timestamp: str
    skill_path: str
    correct: bool
    board_result: Optional[str] = None
    classroom: Optional[str] = None
    deal_subfolder: Optional[str] = None
    deal_number: Optional[int] = None


class ObservationsResponse(BaseModel):
    observations: List[ObservationOut]
    total: int
    limit: int
    offset: int


class ObservationsMetadataResponse(BaseModel):
    observations: List[ObservationMetadataOut]
    total: int


class BoardStatusEntry(BaseModel):
    deal_subfolder: str
    deal_number: int
    status: str
    achievement: str
    last_observation_at: Optional[str] = None


class BoardStatusResponse(BaseModel):
    boards: List[BoardStatusEntry]


class BoardMasteryEntry(BaseModel):
    deal_number: int
    status: str
    achievement: str
    display_color: str
    last_observation_at: Optional[str] = None


class BoardMasteryResponse(BaseModel):
    deal_subfolder: str
    boards: List[BoardMasteryEntry]
