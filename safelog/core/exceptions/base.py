class SafelogException(Exception):
    """Base exception for all safelog errors."""

    def __init__(self, message: str = "A logging error occurred"):
        self.message = message
        super().__init__(self.message)
