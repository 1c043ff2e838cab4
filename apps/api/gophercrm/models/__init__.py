from gophercrm.configuration.models import Configuration
from gophercrm.crm.models import Customer, Lead, Task, Ticket
from gophercrm.identity.models import APIKey, User

__all__ = ["APIKey", "Configuration", "Customer", "Lead", "Task", "Ticket", "User"]
