"""Input schemas for orders and admin patches (Django forms used as validators)."""

from django import forms
from django.core.validators import RegexValidator

from .exceptions import ValidationError

# shard.realm.num, e.g. 0.0.123456
LEDGER_ID_VALIDATOR = RegexValidator(r"^\d+\.\d+\.\d+$", "Expected a ledger id like 0.0.1234")


class ShippingInfoForm(forms.Form):
	"""Address snapshot captured at order creation."""
	firstName = forms.CharField(min_length=2)
	lastName = forms.CharField(min_length=2)
	email = forms.EmailField()
	address = forms.CharField(min_length=5)
	address2 = forms.CharField(required=False)
	city = forms.CharField(min_length=2)
	state = forms.CharField(min_length=2)
	zip = forms.CharField(min_length=3)
	country = forms.CharField(min_length=2)
	phone = forms.CharField(min_length=5)


class RedemptionOrderForm(forms.Form):
	account_id = forms.CharField(max_length=64, validators=[LEDGER_ID_VALIDATOR])
	token_id = forms.CharField(max_length=64)
	physical_item_id = forms.IntegerField(min_value=1)
	amount = forms.IntegerField(min_value=1)
	combination = forms.CharField(max_length=512, required=False)


class OrderPatchForm(forms.Form):
	"""Scalar fields of an order patch; history changes are checked by the state machine."""
	transaction_id = forms.CharField(max_length=128, required=False)
	tracking_number = forms.CharField(max_length=128, required=False)
	tracking_url = forms.URLField(max_length=500, required=False)
	carrier = forms.CharField(max_length=64, required=False)
	notes = forms.CharField(required=False)
	estimated_delivery = forms.DateField(required=False)


def clean_or_raise(form: forms.Form) -> dict:
	"""
	Run a bound form and return cleaned_data, or raise our ValidationError with
	field -> [messages] so callers can render it directly.
	"""
	if not form.is_valid():
		errors = {
			field: [e["message"] for e in messages]
			for field, messages in form.errors.get_json_data().items()
		}
		raise ValidationError(errors)
	return form.cleaned_data
