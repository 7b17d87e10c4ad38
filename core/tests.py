"""
PARCELFLYTE Core Tests
======================

Tests for:
1. Custom User Model (creation, roles, reputation fields)
2. Domain errors and the API error envelope
3. Registration, JWT authentication and profile endpoints
"""

import uuid
from decimal import Decimal

from django.db import IntegrityError
from django.test import TestCase
from rest_framework import status
from rest_framework.test import APITestCase

from core.exceptions import (
    Conflict, DomainError, MatchExpired, InvalidState, NotFound, error_response, get_or_not_found,
)
from core.models import User, UserRole


class TestUserModel(TestCase):
    """Tests for the custom User model."""

    def setUp(self):
        """Create test users for each role."""
        self.admin = User.objects.create_user(
            email='admin@example.com',
            password='testpass123',
            roles=[UserRole.ADMIN.value],
            full_name='Admin Test',
        )
        self.carrier = User.objects.create_user(
            email='carrier@example.com',
            password='testpass123',
            roles=[UserRole.CARRIER.value, UserRole.SENDER.value],
            full_name='Carrier Test',
        )
        self.sender = User.objects.create_user(
            email='sender@example.com',
            password='testpass123',
            full_name='Sender Test',
        )

    # ==========================================
    # User Creation Tests
    # ==========================================

    def test_user_creation_with_email(self):
        """User should be created with email as identifier."""
        self.assertEqual(self.carrier.email, 'carrier@example.com')
        self.assertTrue(self.carrier.check_password('testpass123'))

    def test_user_uuid_primary_key(self):
        """User should have UUID as primary key."""
        self.assertIsInstance(self.carrier.id, uuid.UUID)

    def test_default_role_is_sender(self):
        self.assertEqual(self.sender.roles, [UserRole.SENDER.value])
        self.assertTrue(self.sender.is_sender)
        self.assertFalse(self.sender.is_carrier)

    def test_user_can_hold_several_roles(self):
        """A carrier can also send parcels."""
        self.assertTrue(self.carrier.is_carrier)
        self.assertTrue(self.carrier.is_sender)

    def test_platform_admin(self):
        self.assertTrue(self.admin.is_platform_admin)
        self.assertFalse(self.carrier.is_platform_admin)

    def test_superuser_creation(self):
        """Superuser should have is_staff, is_superuser and the admin role."""
        superuser = User.objects.create_superuser(
            email='root@example.com',
            password='superpass123',
        )
        self.assertTrue(superuser.is_staff)
        self.assertTrue(superuser.is_superuser)
        self.assertTrue(superuser.is_platform_admin)

    def test_duplicate_email_rejected(self):
        """Should not allow duplicate emails."""
        with self.assertRaises(IntegrityError):
            User.objects.create_user(
                email='carrier@example.com',  # Same as carrier
                password='testpass123',
            )

    def test_email_required(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(email='', password='testpass123')

    # ==========================================
    # Reputation Tests
    # ==========================================

    def test_initial_reputation(self):
        """New users start without rating history."""
        self.assertEqual(self.carrier.average_rating, Decimal('0.00'))
        self.assertEqual(self.carrier.total_reviews, 0)
        self.assertFalse(self.carrier.has_rating_history)

    def test_success_rate(self):
        self.carrier.completed_deliveries = 4
        self.carrier.successful_deliveries = 3
        self.assertEqual(self.carrier.success_rate, 0.75)

    def test_success_rate_without_deliveries(self):
        self.assertEqual(self.carrier.success_rate, 0.0)


class TestDomainErrors(TestCase):
    """Tests for the domain error taxonomy."""

    def test_status_codes(self):
        self.assertEqual(NotFound('x').status_code, 404)
        self.assertEqual(Conflict('x').status_code, 409)
        self.assertEqual(MatchExpired('x').status_code, 400)

    def test_expired_is_an_invalid_state(self):
        self.assertTrue(issubclass(MatchExpired, InvalidState))
        self.assertTrue(issubclass(InvalidState, DomainError))

    def test_error_response_carries_extra(self):
        response = error_response(Conflict('Duplicate', match_id='abc'))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data, {'error': 'Duplicate', 'match_id': 'abc'})

    def test_get_or_not_found_malformed_id(self):
        """Malformed identifiers are reported as missing."""
        with self.assertRaises(NotFound):
            get_or_not_found(User.objects.all(), 'not-a-uuid', 'User')


class TestUserAPI(APITestCase):
    """Tests for registration, JWT and /api/users/."""

    def setUp(self):
        self.user = User.objects.create_user(
            email='carrier@example.com',
            password='Tr4vel-Light-2024',
            roles=[UserRole.CARRIER.value],
            full_name='Carrier Test',
        )
        self.admin = User.objects.create_user(
            email='admin@example.com',
            password='testpass123',
            roles=[UserRole.ADMIN.value],
        )

    def test_registration(self):
        """Anyone can register; roles default to sender."""
        response = self.client.post('/api/users/', {
            'email': 'new@example.com',
            'password': 'Parcel-Flyer-9931',
            'full_name': 'New User',
        }, format='json')

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertNotIn('password', response.data)
        self.assertEqual(User.objects.get(email='new@example.com').roles, ['sender'])

    def test_registration_cannot_claim_admin(self):
        response = self.client.post('/api/users/', {
            'email': 'sneaky@example.com',
            'password': 'Parcel-Flyer-9931',
            'roles': ['admin'],
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_jwt_token(self):
        response = self.client.post('/api/auth/token/', {
            'email': 'carrier@example.com',
            'password': 'Tr4vel-Light-2024',
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn('access', response.data)

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {response.data['access']}")
        response = self.client.get('/api/users/me/')
        self.assertEqual(response.data['email'], 'carrier@example.com')

    def test_list_users_admin_only(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get('/api/users/')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

        self.client.force_authenticate(user=self.admin)
        response = self.client.get('/api/users/')
        self.assertEqual(response.data['count'], 2)

    def test_update_own_profile(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.patch(f'/api/users/{self.user.id}/', {
            'max_parcel_weight': 12.5,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.user.refresh_from_db()
        self.assertEqual(self.user.max_parcel_weight, 12.5)

    def test_cannot_see_other_profiles(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get(f'/api/users/{self.admin.id}/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_public_ratings_of_another_user(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.get(f'/api/users/{self.user.id}/ratings/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['summary']['count'], 0)
        self.assertEqual(response.data['user']['full_name'], 'Carrier Test')

    def test_admin_deletes_user_without_history(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.delete(f'/api/users/{self.user.id}/')
        self.assertEqual(response.status_code, status.HTTP_204_NO_CONTENT)
        self.assertFalse(User.objects.filter(pk=self.user.pk).exists())

    def test_user_with_travels_cannot_be_deleted(self):
        """Shipping history is protected; the API answers 409 instead of failing."""
        from logistics.tests.fixtures import make_travel
        make_travel(self.user)

        self.client.force_authenticate(user=self.admin)
        response = self.client.delete(f'/api/users/{self.user.id}/')
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertIn('error', response.data)
        self.assertTrue(User.objects.filter(pk=self.user.pk).exists())
