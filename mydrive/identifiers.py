import uuid

from .errors import GenerationError


def new_id() -> str:
    """Return a fresh 128-bit random identifier.

    Used both as the metadata primary key and as the stem of the stored file
    name, so it never needs coordination between concurrent callers.
    """

    try:
        return str(uuid.uuid4())
    except (NotImplementedError, OSError) as error:
        raise GenerationError(f"Entropy source unavailable: {error}") from error
