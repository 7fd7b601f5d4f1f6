"""Custom JSON encoding utilities"""
import json
from datetime import datetime
from enum import Enum

class DateTimeEncoder(json.JSONEncoder):
    """JSON encoder that handles datetimes and enum members"""
    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)

def json_dumps(obj, **kwargs):
    """Helper function to dump JSON with datetime handling"""
    return json.dumps(obj, cls=DateTimeEncoder, **kwargs)
