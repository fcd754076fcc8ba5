from __future__ import annotations

import unittest

from factory_ledger.services.notification_service import Notifier


class NotifierTests(unittest.TestCase):
    def test_errors_since_only_returns_later_errors(self) -> None:
        notifier = Notifier()
        notifier.error('Earlier failure')
        mark = notifier.mark()

        notifier.success('Saved')
        notifier.error('Insufficient balance')

        self.assertEqual(notifier.errors_since(mark), ['Insufficient balance'])
        self.assertEqual(notifier.errors_since(notifier.mark()), [])

    def test_mark_survives_rotation_of_old_notices(self) -> None:
        notifier = Notifier(max_notices=2)
        notifier.error('first')
        notifier.error('second')
        mark = notifier.mark()

        notifier.error('third')

        self.assertEqual(notifier.errors_since(mark), ['third'])
        self.assertEqual([notice.message for notice in notifier.notices], ['second', 'third'])

    def test_drain_empties_the_buffer(self) -> None:
        notifier = Notifier()
        notifier.info('Backup created')

        self.assertEqual([notice.level for notice in notifier.drain()], ['info'])
        self.assertEqual(notifier.notices, [])


if __name__ == '__main__':
    unittest.main()
