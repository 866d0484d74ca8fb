"""Error taxonomy.

Expected empty outcomes (no face in frame, nobody within threshold, no patrol
route) are returned as ``None``/sentinels and never raised. Everything below is
either a caller bug (``ValueError`` family) or an environment failure
(``RuntimeError`` family) that ends the current attempt.
"""


class PatrolFaceError(Exception):
    pass


# ----- precondition violations -----

class InvalidDescriptorError(PatrolFaceError, ValueError):
    pass


class DescriptorLengthError(InvalidDescriptorError):
    def __init__(self, expected: int, got: int):
        super().__init__(f"Descriptor length mismatch: expected {expected}, got {got}")
        self.expected = expected
        self.got = got


class InvalidCoordinateError(PatrolFaceError, ValueError):
    def __init__(self, argument: str, message: str):
        super().__init__(f"{argument}: {message}")
        self.argument = argument


class InvalidRadiusError(PatrolFaceError, ValueError):
    def __init__(self, argument: str, value):
        super().__init__(f"{argument}: radius must be a finite, non-negative number of meters (got {value!r})")
        self.argument = argument


class InvalidThresholdError(PatrolFaceError, ValueError):
    def __init__(self, value):
        super().__init__(f"Match threshold must be a finite, non-negative distance (got {value!r})")
        self.value = value


class MultipleFacesError(PatrolFaceError, ValueError):
    def __init__(self, count: int):
        super().__init__(f"Ambiguous capture: {count} faces detected, expected exactly one")
        self.count = count


# ----- environment failures -----

class ModelLoadError(PatrolFaceError, RuntimeError):
    pass


class ModelNotLoadedError(PatrolFaceError, RuntimeError):
    pass


class CameraUnavailableError(PatrolFaceError, RuntimeError):
    pass
