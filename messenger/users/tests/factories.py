from factory import Faker
from factory import Sequence
from factory import post_generation
from factory.django import DjangoModelFactory

from messenger.users.models import User

DEFAULT_PASSWORD = "testpass123"


class UserFactory(DjangoModelFactory):
    email = Sequence(lambda n: f"user{n}@messenger.test")
    first_name = Faker("first_name")
    last_name = Faker("last_name")
    is_active = True

    @post_generation
    def password(self, create, extracted, **kwargs):
        self.set_password(extracted or DEFAULT_PASSWORD)
        if create:
            self.save(update_fields=["password"])

    class Meta:
        model = User
        django_get_or_create = ["email"]
        skip_postgeneration_save = True
