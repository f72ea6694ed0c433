"""Free-text input cleanup applied by request schemas."""


def sanitize_user_input(text: str, max_length: int = 10000) -> str:
    """
    Trim to max_length and drop null bytes and control characters
    (newlines and tabs are kept).
    """
    if not text:
        return ""

    if len(text) > max_length:
        text = text[:max_length]

    text = text.replace('\x00', '')
    return ''.join(char for char in text if ord(char) >= 32 or char in '\n\r\t')
