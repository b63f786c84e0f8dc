from .crud_booking import booking
from . import crud_message
