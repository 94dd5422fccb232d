from pipeline.transformers.period_transformer import PeriodTransformer

__all__ = ["PeriodTransformer"]
