def render(props):
    return h("div", {"dangerouslySetInnerHTML": {"__html": props.html}})
