def extract_metadata(query, metadata_object=False):
    """
    Render the query parameters of the report URI for the log line.

    ``query`` is the request's QueryDict, which keeps parse order. By
    default only the first parameter is kept, so callers appending
    tracking parameters do not blow up the log line. With metadata_object
    every key is kept (first value wins) in sorted key order.
    """
    pairs = [(key, values[0]) for key, values in query.lists() if key and values]
    if not pairs:
        return ""

    if not metadata_object:
        key, value = pairs[0]
        return f"{key}={value}"

    metadata = dict(pairs)
    return " ".join(f"{key}={metadata[key]}" for key in sorted(metadata))
