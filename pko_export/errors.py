class ExportError(RuntimeError):
    pass


class LayoutError(ExportError):
    """The JSON declarations and the buffer blocks would disagree."""
