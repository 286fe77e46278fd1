import logging
import re

logger = logging.getLogger(__name__)


def clean_phone_number(phone):
    """Clean and standardize phone numbers to +<country><number>"""
    if not phone:
        return None

    digits = re.sub(r'\D', '', str(phone))

    if len(digits) == 10:
        return f"+1{digits}"
    elif len(digits) == 11 and digits.startswith('1'):
        return f"+{digits}"
    elif len(digits) > 11:
        return f"+{digits}"
    else:
        logger.warning(f"Invalid phone number format: {phone}")
        return str(phone).strip()
