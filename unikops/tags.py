"""Resource tag codec shared by the cloud backends."""

from .types import Tag

NAME_KEY = "Name"
CREATED_BY_KEY = "CreatedBy"
CREATED_BY_VALUE = "ops"


def build_tags(tags: list[Tag] | None, default_name: str) -> tuple[list[Tag], str]:
    """Build the tag list for a created resource.

    The resolved name is the value of the last ``Name`` tag, falling back to
    ``default_name`` (which is then appended as a tag). ``CreatedBy=ops`` is
    always present exactly once.

    :param tags: User-supplied tags
    :param default_name: Name to use when no ``Name`` tag is given
    :return: (tags, resolved_name)
    """
    result: list[Tag] = []
    name = default_name
    name_given = False

    for tag in tags or []:
        if tag["Key"] == CREATED_BY_KEY:
            continue
        if tag["Key"] == NAME_KEY:
            name = tag["Value"]
            name_given = True
        result.append({"Key": tag["Key"], "Value": tag["Value"]})

    if not name_given:
        result.append({"Key": NAME_KEY, "Value": default_name})

    result.append({"Key": CREATED_BY_KEY, "Value": CREATED_BY_VALUE})
    return result, name


def tag_specifications(resource_type: str, tags: list[Tag]) -> list[dict]:
    return [{"ResourceType": resource_type, "Tags": tags}]


def tag_value(resource: dict, key: str, default: str = "") -> str:
    """Read a tag value from an EC2 resource description."""
    return next(
        (t["Value"] for t in resource.get("Tags", []) if t["Key"] == key),
        default,
    )


def created_by_filter() -> dict:
    return {"Name": f"tag:{CREATED_BY_KEY}", "Values": [CREATED_BY_VALUE]}
