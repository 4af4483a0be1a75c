"""Resolve burn attempts whose outcome or bookkeeping is still open."""

from django.core.management.base import BaseCommand

from core.services import build_services


class Command(BaseCommand):
	help = "Look up unknown burns on the ledger and retry order updates for confirmed ones"

	def add_arguments(self, parser):
		parser.add_argument(
			"--dry-run",
			action="store_true",
			help="List the attempts that need attention without touching them",
		)
		parser.add_argument(
			"--order",
			dest="order_id",
			help="Only reconcile the latest attempt of this order",
		)
		parser.add_argument(
			"--grace-seconds",
			type=float,
			default=None,
			help="How long a transaction may stay unseen before it counts as never sent",
		)

	def handle(self, *args, **options):
		services = build_services(grace_seconds=options["grace_seconds"])
		reconciler = services.reconciler

		if options["dry_run"]:
			pending = reconciler.pending()
			if options["order_id"]:
				pending = [a for a in pending if a.order_id == options["order_id"]]
			self.stdout.write(f"Would reconcile {len(pending)} burn attempt(s)")
			for attempt in pending:
				self.stdout.write(
					f"  - {attempt.order_id} {attempt.attempt_id}: {attempt.status} at {attempt.stage}"
					f" tx={attempt.transaction_id or '-'}"
				)
			return

		if options["order_id"]:
			attempt = reconciler.reconcile_order(options["order_id"])
			if attempt is None:
				self.stdout.write(f"No burn attempts for order {options['order_id']}")
				return
			self.stdout.write(self.style.SUCCESS(
				f"Order {attempt.order_id}: attempt {attempt.attempt_id} is {attempt.status}"
			))
			return

		summary = reconciler.run_pending()
		self.stdout.write(self.style.SUCCESS(
			"Reconciled {checked} burn attempt(s): {settled} settled, {failed} failed, {unresolved} unresolved".format(**summary)
		))
