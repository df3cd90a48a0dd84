from django.core.management.base import BaseCommand
from django.contrib.auth.models import Group, Permission

from backend.core.permissions import ROLE_PERMISSIONS, ROLE_NAMES, SUPERADMIN, ADMIN


class Command(BaseCommand):
    help = 'Create Django user groups for the pharmacy roles: superadmin, admin, pharmacien, vendeur, caissier'

    def handle(self, *args, **options):
        created_count = 0
        existing_count = 0

        for role, permissions in ROLE_PERMISSIONS.items():
            group, created = Group.objects.get_or_create(name=role)

            if created:
                self.stdout.write(self.style.SUCCESS(f'✓ Created group: {role} ({ROLE_NAMES[role]})'))
                created_count += 1
            else:
                self.stdout.write(f'  Group already exists: {role}')
                existing_count += 1

            # Django admin access follows the application role
            if role == SUPERADMIN:
                group.permissions.set(Permission.objects.all())
                self.stdout.write(f'  Added all Django permissions to {role} group')
            elif role == ADMIN:
                group.permissions.set(
                    Permission.objects.exclude(content_type__app_label='admin')
                )
                self.stdout.write(f'  Added module permissions to {role} group')
            else:
                self.stdout.write(f'  Application permissions for {role}: {", ".join(permissions)}')

        self.stdout.write(self.style.SUCCESS(
            f'\nCompleted: {created_count} groups created, {existing_count} groups already existed'
        ))
