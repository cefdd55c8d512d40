"""Network policy resources, policy evaluation, chain rendering and command runners."""