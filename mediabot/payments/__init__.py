"""Mobile-money payments: M-Pesa STK push client and callback decoding."""
