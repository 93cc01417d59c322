from datetime import datetime, timezone

from errors import ValidationError
from permissions import ROLES

USER_FIELDS = ('username', 'password', 'role', 'name', 'email')
# Upper bound of a 32-bit INTEGER column
MAX_INT = 2**31 - 1


def require_payload(data):
    if not isinstance(data, dict):
        raise ValidationError('Request body must be a JSON object')
    return data


def parse_datetime(value, field):
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except (ValueError, OverflowError):
            raise ValidationError(f'{field} must be an ISO 8601 timestamp')
    else:
        raise ValidationError(f'{field} must be an ISO 8601 timestamp')
    if parsed.tzinfo is not None:
        try:
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
        except OverflowError:
            raise ValidationError(f'{field} is out of range')
    return parsed


def _text(data, key):
    value = data[key]
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f'{key} must be a non-empty string')
    # Credentials are kept exactly as given
    return value if key == 'password' else value.strip()


def _integer(data, key, minimum):
    value = data[key]
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int) or not minimum <= value <= MAX_INT:
        raise ValidationError(f'{key} must be an integer between {minimum} and {MAX_INT}')
    return value


def _count(data, key):
    return _integer(data, key, 0)


def _identifier(data, key):
    return _integer(data, key, 1)


def _missing(data, fields):
    missing = [key for key in fields if key not in data]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def parse_book(data, partial=False):
    require_payload(data)
    if not partial:
        _missing(data, ('title', 'author', 'isbn'))
    fields = {}
    for key in ('title', 'author', 'isbn'):
        if key in data:
            fields[key] = _text(data, key)
    if 'quantity' in data:
        fields['quantity'] = _count(data, 'quantity')
    elif not partial:
        fields['quantity'] = 1
    if 'available' in data:
        if partial:
            raise ValidationError('available is maintained by loans and cannot be set')
        if _count(data, 'available') != fields['quantity']:
            raise ValidationError('A new book must have every copy available')
    if partial and not fields:
        raise ValidationError('Nothing to update')
    return fields


def parse_user(data, partial=False, allowed_roles=ROLES):
    require_payload(data)
    if not partial:
        _missing(data, USER_FIELDS)
    fields = {}
    for key in USER_FIELDS:
        if key in data:
            fields[key] = _text(data, key)
    if 'role' in fields and fields['role'] not in allowed_roles:
        raise ValidationError(f"role must be one of: {', '.join(allowed_roles)}")
    if 'email' in fields and '@' not in fields['email']:
        raise ValidationError('email must be a valid address')
    if partial and not fields:
        raise ValidationError('Nothing to update')
    return fields


def parse_credentials(data):
    require_payload(data)
    _missing(data, ('username', 'password'))
    return {'username': _text(data, 'username'), 'password': _text(data, 'password')}


def parse_new_loan(data):
    """Body of POST /api/loans. userId, loanDate and dueDate are optional."""
    require_payload(data)
    _missing(data, ('bookId',))
    if data.get('returnDate') is not None:
        raise ValidationError('A new loan cannot already be returned')
    fields = {'book_id': _identifier(data, 'bookId')}
    if data.get('userId') is not None:
        fields['user_id'] = _identifier(data, 'userId')
    if data.get('loanDate') is not None:
        fields['loan_date'] = parse_datetime(data['loanDate'], 'loanDate')
    if data.get('dueDate') is not None:
        fields['due_date'] = parse_datetime(data['dueDate'], 'dueDate')
    return fields


def parse_loan_update(data):
    require_payload(data)
    for key in ('userId', 'bookId', 'loanDate'):
        if key in data:
            raise ValidationError(f'{key} cannot be changed on an existing loan')
    fields = {}
    if 'dueDate' in data:
        fields['due_date'] = parse_datetime(data['dueDate'], 'dueDate')
    if 'returnDate' in data:
        if data['returnDate'] is None:
            raise ValidationError('A returned loan cannot be reopened')
        fields['return_date'] = parse_datetime(data['returnDate'], 'returnDate')
    if not fields:
        raise ValidationError('Nothing to update')
    return fields


def parse_return(data):
    """Optional body of POST /api/loans/<id>/return."""
    if not data:
        return {}
    require_payload(data)
    if data.get('returnDate') is None:
        return {}
    return {'return_date': parse_datetime(data['returnDate'], 'returnDate')}
