def truncate(text: "str", width: "int") -> "str":
    """
    shortens text to width characters, marking the cut with an ellipsis.
    """
    if len(text) <= width:
        return text
    if width <= 3:
        return text[:width]
    return text[: width - 3] + "..."
