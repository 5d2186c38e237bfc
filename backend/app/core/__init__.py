from app.core.config import settings
from app.core.database import get_db, Base
from app.core.security import create_access_token, decode_token
