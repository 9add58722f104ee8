import pathlib


def directory_source(directory):
    """
    Returns a manifest source that reads manifests from files in the given directory.

    The identifier of a manifest is its path relative to the directory.
    """
    root = pathlib.Path(directory)
    def source(identifier):
        return (root / identifier).read_bytes()
    return source


def dict_source(manifests):
    """
    Returns a manifest source that serves manifests from a dictionary of identifier
    to encoded manifest.
    """
    def source(identifier):
        try:
            return manifests[identifier]
        except KeyError:
            raise FileNotFoundError(f"manifest {identifier} not found")
    return source
