__all__ = ["Badge"]

_calls = []


def Badge(props):
    _calls.append(props.text)
    return h("span", {"className": "badge", "style": {"fontSize": 12, "lineHeight": 1.5}}, props.text)
