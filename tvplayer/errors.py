class PlayerError(Exception):
    pass


class SourceUnavailable(PlayerError):
    """An upstream feed failed or answered with something unusable."""


class AssetLoadFailure(PlayerError):
    pass


class StuckLoad(PlayerError):
    pass


class AllSourcesExhausted(PlayerError):
    pass


class ServerUnreachable(PlayerError):
    pass
