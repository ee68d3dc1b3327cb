import functools

VERSION = (0, 4, 0)


@functools.lru_cache(maxsize=None)
def get_grocer_version():
    return ".".join(map(str, VERSION))
