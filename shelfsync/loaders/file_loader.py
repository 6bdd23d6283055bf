"""
File loader for exporting catalog snapshots as JSON.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiofiles
from rich.console import Console

from shelfsync.config.settings import StorageConfig, config
from shelfsync.tracking.catalog_store import CatalogStore
from shelfsync.transformers.record_transformer import ProductRecord

console = Console()


class FileLoader:
    """Writes the catalog to a directory of JSON files."""

    def __init__(self, storage_config: Optional[StorageConfig] = None):
        self.config = storage_config or config.storage
        self.config.ensure_dirs()

    async def _write_json(self, path: Path, data) -> None:
        async with aiofiles.open(path, "w") as f:
            await f.write(json.dumps(data, indent=2, ensure_ascii=False))

    async def export_catalog(self, store: CatalogStore, output_dir: Optional[Path] = None) -> Path:
        """
        Save navigation, categories and products to disk.

        Args:
            store: Catalog to export
            output_dir: Target directory. Defaults to a timestamped folder under export_dir

        Returns:
            Path to the export directory
        """
        if output_dir is None:
            stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            output_dir = self.config.export_dir / stamp
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        navigation = store.get_navigation()
        categories = store.all_categories()
        products = store.all_products()

        console.print(f"\n[cyan]Exporting catalog to {output_dir}[/cyan]")

        await self._write_json(
            output_dir / "navigation.json", [h.model_dump(mode="json") for h in navigation]
        )
        console.print(f"  [green]✓[/green] navigation.json ({len(navigation)})")

        await self._write_json(
            output_dir / "categories.json", [c.model_dump(mode="json") for c in categories]
        )
        console.print(f"  [green]✓[/green] categories.json ({len(categories)})")

        await self._write_json(
            output_dir / "products.json", [p.model_dump(mode="json") for p in products]
        )
        console.print(f"  [green]✓[/green] products.json ({len(products)})")

        await self.save_summary(products, output_dir)
        return output_dir

    def generate_summary(self, products: list[ProductRecord]) -> dict:
        """Generate a summary of the exported products."""
        summary = {
            "total_products": len(products),
            "available": 0,
            "currencies": {},
            "price_range": {"min": None, "max": None},
        }

        for product in products:
            if product.is_available:
                summary["available"] += 1

            currency = product.price.currency
            summary["currencies"][currency] = summary["currencies"].get(currency, 0) + 1

            amount = product.price.amount
            if amount is None:
                continue
            value = float(amount)
            if summary["price_range"]["min"] is None or value < summary["price_range"]["min"]:
                summary["price_range"]["min"] = value
            if summary["price_range"]["max"] is None or value > summary["price_range"]["max"]:
                summary["price_range"]["max"] = value

        return summary

    async def save_summary(self, products: list[ProductRecord], output_dir: Path) -> Path:
        """Save a summary JSON file."""
        summary_path = Path(output_dir) / "summary.json"
        await self._write_json(summary_path, self.generate_summary(products))
        console.print(f"[cyan]Summary saved to {summary_path}[/cyan]")
        return summary_path
