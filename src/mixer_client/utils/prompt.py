def console_confirm(question: str = "Confirm the transaction [Y/n]: ") -> bool:
    """Ask on the terminal; an empty answer counts as yes."""
    answer = input(question).strip().lower()
    return answer in ("", "y", "yes")
