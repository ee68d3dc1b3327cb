from django.apps.config import AppConfig


class GrocerAppConfig(AppConfig):
    name = "grocer"
    default_auto_field = "django.db.models.BigAutoField"
