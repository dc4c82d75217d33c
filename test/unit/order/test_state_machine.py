import unittest

from common.errors import ValidationError
from order.saga.state_machine import OrderStatus, can_transition, is_terminal, parse_status


class TestStateMachine(unittest.TestCase):

    def test_parse_known_status(self):
        self.assertEqual(parse_status("ready_for_payment"), OrderStatus.READY_FOR_PAYMENT)

    def test_parse_unknown_status(self):
        with self.assertRaises(ValidationError) as ctx:
            parse_status("shipped")
        self.assertIn("Must be one of", ctx.exception.message)

    def test_parse_non_string(self):
        with self.assertRaises(ValidationError):
            parse_status(["pending"])

    def test_terminal_statuses(self):
        self.assertTrue(is_terminal("completed"))
        self.assertTrue(is_terminal(OrderStatus.CANCELLED))
        self.assertTrue(is_terminal("failed"))
        self.assertFalse(is_terminal("pending"))
        self.assertFalse(is_terminal("ready_for_payment"))

    def test_edges(self):
        self.assertTrue(can_transition("pending", "ready_for_payment"))
        self.assertTrue(can_transition("pending", "cancelled"))
        self.assertTrue(can_transition("ready_for_payment", "completed"))
        self.assertFalse(can_transition("pending", "completed"))
        self.assertFalse(can_transition("cancelled", "pending"))
