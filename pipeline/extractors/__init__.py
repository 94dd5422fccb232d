from pipeline.extractors.warehouse_extractor import WarehouseExtractor

__all__ = ["WarehouseExtractor"]
