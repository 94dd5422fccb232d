from pipeline.alerts.webhook import WebhookAlertChannel

__all__ = ["WebhookAlertChannel"]
