import click
from eth_utils import is_address, to_checksum_address

from deployment.constants import DataAvailabilityMode


class ChainId(click.ParamType):
    """A positive EVM chain id, decimal or 0x-prefixed."""

    name = "chain_id"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            chain_id = value
        else:
            try:
                chain_id = int(str(value), 0)
            except ValueError:
                self.fail(f"{value!r} is not a chain id", param, ctx)
        if chain_id < 1:
            self.fail(f"chain id must be positive, got {chain_id}", param, ctx)
        return chain_id


class ChecksumAddress(click.ParamType):
    name = "checksum_address"

    def convert(self, value, param, ctx):
        if not is_address(value):
            self.fail(f"{value} is not a valid ethereum address", param, ctx)
        return to_checksum_address(value)


class DataAvailability(click.Choice):
    """Case-insensitive choice of data availability modes."""

    name = "data_availability"

    def __init__(self):
        super().__init__([mode.value for mode in DataAvailabilityMode], case_sensitive=False)

    def convert(self, value, param, ctx):
        if isinstance(value, DataAvailabilityMode):
            return value
        return DataAvailabilityMode(super().convert(value, param, ctx).lower())
