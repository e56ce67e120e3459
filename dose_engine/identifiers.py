"""
Patient identifier (CNP) input handling
"""

import re
from typing import Optional, Tuple

IDENTIFIER_LENGTH = 13

def sanitize_identifier(value: Optional[str]) -> str:
    """Digits only, truncated to the identifier length"""
    if not value:
        return ''
    return re.sub(r'\D', '', str(value))[:IDENTIFIER_LENGTH]

def validate_identifier(value: Optional[str]) -> Tuple[bool, Optional[str]]:
    identifier = sanitize_identifier(value)
    if len(identifier) != IDENTIFIER_LENGTH:
        return False, 'length'
    return True, None
