"""Read access to providers. Profiles are maintained elsewhere."""

from sqlalchemy.orm import Session

from ..models.provider import Provider
from .base_repository import BaseRepository


class ProviderRepository(BaseRepository[Provider]):
    def __init__(self, db: Session):
        super().__init__(db, Provider)
