from django.apps import AppConfig


class NakliyeConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "Nakliye"
    verbose_name = "Nakliye Pazaryeri"
