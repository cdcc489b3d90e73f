from loguru import logger

from barsync.adapters.base import ExchangeAdapter
from barsync.persistence import SymbolPropertiesWriter


class ExchangeInfoUpdater:
    """Refreshes a venue's rows in the symbol-properties database.

    This is a one-shot flow: fetch the venue's current symbol listing and
    overwrite the rows of its market. Errors propagate to the caller.
    """

    def __init__(self, adapter: ExchangeAdapter, writer: SymbolPropertiesWriter) -> None:
        self.adapter = adapter
        self.writer = writer

    async def run(self) -> int:
        """Fetches and stores the symbol properties.

        Returns:
            The number of symbols written.

        Raises:
            FetchError: If the listing cannot be downloaded.
            WriteError: If the database cannot be updated.
        """
        logger.info(f"[{self.adapter.venue_name}] Updating symbol properties...")
        properties = await self.adapter.get_symbol_properties()
        if not properties:
            # An empty listing would wipe the market; keep what is on disk.
            logger.warning(
                f"[{self.adapter.venue_name}] Venue returned no symbols; "
                "database left unchanged."
            )
            return 0
        count = await self.writer.replace_market(self.adapter.market, properties)
        logger.success(
            f"[{self.adapter.venue_name}] Symbol properties updated ({count} symbols)."
        )
        return count
