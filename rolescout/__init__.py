"""RoleScout: buying-role resolution for CRM deal contacts."""
