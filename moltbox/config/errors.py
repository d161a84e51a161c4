"""Errors raised while materialising the gateway config."""


class ConfigMaterializationError(ValueError):
    """The environment describes a config the gateway cannot run with."""

    pass


class AllowListRequiredError(ConfigMaterializationError):
    """An allow-list DM policy was requested without any identifiers to allow."""

    def __init__(self, channel: str, variable: str):
        self.channel = channel
        self.variable = variable
        super().__init__(
            f"{channel}: dm policy 'allowlist' requires {variable} "
            "(comma-separated user IDs)"
        )


class CatalogInvariantError(AssertionError):
    """The primary model does not belong to the catalog written in the same pass.

    This is a programming error, not an input error.
    """

    pass
